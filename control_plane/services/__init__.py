"""Business logic services for the control plane."""
