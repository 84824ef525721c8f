"""hvfleet - Hyper-V tenant VM fleet provisioning CLI

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- No credentials in code or on disk
- Fail fast with helpful guidance

hvfleet builds (or reuses) a reference disk image, fetches a zero-touch
enrollment profile from Microsoft Graph, and provisions a block of
sequentially named, TPM-enabled Hyper-V VMs for a tenant.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
