"""Custodial deposit settlement: watch, swap to stable, split, credit, sweep."""

__version__ = "0.1.0"
