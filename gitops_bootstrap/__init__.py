"""Bootstrap a Kubernetes cluster into a GitOps-managed state."""

__version__ = "1.0.0"
