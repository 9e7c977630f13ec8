"""Default constants and configuration values for kaswa."""

from .config import CONNECTION_POLICY, DEFAULT_MANAGER_CONFIG, QR_GENERATION_POLICY

__all__ = ["CONNECTION_POLICY", "DEFAULT_MANAGER_CONFIG", "QR_GENERATION_POLICY"]
