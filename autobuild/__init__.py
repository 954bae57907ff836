"""
autobuild - Continuous build daemon for Nix flakes
"""

__version__ = "0.1.0"
__logo__ = "❄️"
