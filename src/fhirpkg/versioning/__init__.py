"""Directive parsing, version ordering and resolution."""
