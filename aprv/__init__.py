"""aprv — import and browse App Privacy Report exports."""

__version__ = "0.1.0"
