"""Kernel scheduler, register-machine CPU and block filesystem of a small teaching operating system."""

__version__ = "0.1.0"