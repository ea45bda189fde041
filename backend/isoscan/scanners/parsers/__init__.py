# isoscan/scanners/parsers/__init__.py
"""
Scanner output parsers.
Each parser reads one scanner's captured output and produces
NormalizedFindings. Parsers do NOT run tools; they only interpret output.
"""
from isoscan.scanners.parsers.slither_parser import SlitherParser
from isoscan.scanners.parsers.mythril_parser import MythrilParser
from isoscan.scanners.parsers.semgrep_parser import SemgrepParser

__all__ = ["SlitherParser", "MythrilParser", "SemgrepParser"]
