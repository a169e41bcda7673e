"""Domain model, validation, risk scoring and workflow orchestration."""
