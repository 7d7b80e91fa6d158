"""Document accessor protocols and headless document implementation."""

from .accessor import DocumentAccessor, DocumentNode, describe_node
from .snapshot import DocumentSnapshot
from .soup_document import SoupDocument, SoupNode

__all__ = [
    "DocumentAccessor",
    "DocumentNode",
    "DocumentSnapshot",
    "SoupDocument",
    "SoupNode",
    "describe_node",
]
