"""HTTP surface for the classification service."""

from hsclassify.api.app import create_app

__all__ = ["create_app"]
