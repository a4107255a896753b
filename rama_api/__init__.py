"""Rama Judicial case lookup API with a pollable, bounded-concurrency job engine."""

__version__ = "3.1.0"
