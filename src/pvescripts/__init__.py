"""Remote execution and restore orchestration for Proxmox VE helper scripts."""

__version__ = "0.4.0"
