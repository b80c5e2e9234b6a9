from .catalog import Volume, VolumeStatus, generate_catalog
from .claims import ClaimRequest, ClaimService
from .errors import Conflict, InvalidArgument, LongzangError, NotFound, Unavailable
from .scripture import extract_plain_text, normalize_scripture_html

__all__ = [
    "Volume",
    "VolumeStatus",
    "generate_catalog",
    "ClaimRequest",
    "ClaimService",
    "LongzangError",
    "InvalidArgument",
    "NotFound",
    "Conflict",
    "Unavailable",
    "extract_plain_text",
    "normalize_scripture_html",
]
