"""Experimentation engine for storefront checkout and cart offers."""

__version__ = "0.1.0"
