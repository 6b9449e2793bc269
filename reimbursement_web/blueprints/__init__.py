"""HTTP blueprints for the reimbursement service."""
