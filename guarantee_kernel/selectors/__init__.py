"""Selectors for the guarantee kernel (read side)."""

from guarantee_kernel.selectors.guarantee_selector import GuaranteeSelector

__all__ = ["GuaranteeSelector"]
