"""Loading, analysis and reporting of binary memory allocation capture files."""

__version__ = "0.1.0"