"""Storyfox - turns a short story concept into an illustrated picture book."""

__version__ = "0.1.0"
