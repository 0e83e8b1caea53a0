"""authguard - security-analysis core for university identity authentication."""

__version__ = "1.0.0"
