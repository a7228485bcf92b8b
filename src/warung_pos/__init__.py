"""
Warung POS – point-of-sale backend for a small retail shop.

Shared utilities (config, logging, paths, errors) live at the package root;
the cart ledger and catalog live under `store`, camera scanning under
`vision`, and the commentary generator under `ai`.
"""

__all__ = [
    "config",
    "errors",
    "logging",
    "paths",
]
