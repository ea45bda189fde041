# isoscan/scans/__init__.py
from .routes import scans_bp, scanners_bp

__all__ = ["scans_bp", "scanners_bp"]
