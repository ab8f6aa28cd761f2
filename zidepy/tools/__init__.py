"""Convenience entry points working on AnnData"""

from .find_deg import find_deg, find_all_degs

__all__ = ["find_deg", "find_all_degs"]
