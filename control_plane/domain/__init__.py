"""Domain aggregates reconciled by the control plane."""
