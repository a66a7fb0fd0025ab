"""imagepipe - image asset pipeline for business entities."""

__version__ = "0.1.0"
