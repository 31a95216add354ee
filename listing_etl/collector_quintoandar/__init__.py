"""QuintoAndar portal transport."""

from .client import QuintoAndarClient

__all__ = ["QuintoAndarClient"]
