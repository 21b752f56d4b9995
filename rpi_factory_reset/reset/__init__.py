"""Reset orchestration: intent, scheduler, boot dispatchers and audit trail."""
