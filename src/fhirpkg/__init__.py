"""FHIR package directive resolution, registry access and disk cache."""

__version__ = "0.4.0"
