"""streamqueue - retryable cache queue for remote references in federated posts."""

__version__ = "0.1.0"
