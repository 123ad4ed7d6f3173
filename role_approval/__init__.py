"""Role Approval: automated follow-up on project role requests."""
