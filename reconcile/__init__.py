"""Image-to-product reconciliation engine.

Parses image filenames, normalizes and compares color tokens, indexes images
by ``(model_ref, color)`` and resolves catalog variants to images with a
confidence tier.
"""
from .colors import NormalizedColor, normalize_color  # noqa: F401
from .config import ReconcileConfig, load_config  # noqa: F401
from .equivalence import ColorMatch, ColorMatcher  # noqa: F401
from .errors import (  # noqa: F401
    ConfigError,
    CorpusInconsistencyError,
    IndexBuildError,
    ParseFailure,
    ReconcileError,
    StoreError,
    TransientStoreError,
)
from .filename_parser import FilenameParser, ParsedFilename, parse_filename  # noqa: F401
from .image_index import ImageIndex  # noqa: F401
from .records import CatalogVariant, ImageRecord, ListingEntry  # noqa: F401
from .resolver import MatchResult, Resolver, Tier  # noqa: F401
from .synonyms import SynonymTable  # noqa: F401

__all__ = [
    "CatalogVariant",
    "ColorMatch",
    "ColorMatcher",
    "ConfigError",
    "CorpusInconsistencyError",
    "FilenameParser",
    "ImageIndex",
    "ImageRecord",
    "IndexBuildError",
    "ListingEntry",
    "MatchResult",
    "NormalizedColor",
    "ParseFailure",
    "ParsedFilename",
    "ReconcileConfig",
    "ReconcileError",
    "Resolver",
    "StoreError",
    "SynonymTable",
    "Tier",
    "TransientStoreError",
    "load_config",
    "normalize_color",
    "parse_filename",
]
