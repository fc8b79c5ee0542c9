"""
Graph-editing operations on compiled networks.
"""

from .svd import choose_rank, factorize, perform_svd_decomposition

__all__ = ["choose_rank", "factorize", "perform_svd_decomposition"]
