"""File-backed persistence: JSON datasets, advisory locks and the audit log."""
