"""Sales activity / deal reconciliation service."""
