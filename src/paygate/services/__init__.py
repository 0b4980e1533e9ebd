"""Gateway services: ledger, orchestrators, reconciler, invoices and registry."""
