"""pollci: self-coordinating pull request CI workers."""

__version__ = "0.4.0"
