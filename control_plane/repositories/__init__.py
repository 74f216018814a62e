"""Database repositories for the control plane."""
