"""Channel event router and adapter rendering pipeline."""

__version__ = "0.1.0"
