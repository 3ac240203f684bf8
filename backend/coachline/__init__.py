"""Coachline: booking lifecycle and payment settlement backend."""

__version__ = "0.1.0"
