"""gatecheck: policy-as-code admission gate for structured build and deploy artifacts."""

__version__ = "0.1.0"
