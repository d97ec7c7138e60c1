# core/metadata.py
"""Encoding of provenance records to/from the sidecar key/value format stored next to each object."""
import datetime
from typing import Any, Dict, Mapping, Optional

from core.config import settings
from core.models import ProvenanceMetadata, UNKNOWN

UPLOADED_BY_KEY = "uploadedBy"
UPLOADED_AT_KEY = "uploadedAt"


def format_uploaded_at(moment: Optional[datetime.datetime] = None) -> str:
    """Locale-rendered upload time. Meant for display, not for parsing back."""
    moment = moment or datetime.datetime.now()
    return moment.strftime(settings.UPLOADED_AT_FORMAT)


def encode_provenance(provenance: ProvenanceMetadata) -> Dict[str, str]:
    return {
        UPLOADED_BY_KEY: provenance.uploaded_by,
        UPLOADED_AT_KEY: provenance.uploaded_at,
    }


def _field(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        return UNKNOWN
    return value


def decode_provenance(raw: Optional[Mapping[str, Any]]) -> ProvenanceMetadata:
    """Decodes a sidecar map; absent or malformed fields become 'Unknown'."""
    if not isinstance(raw, Mapping):
        return ProvenanceMetadata()
    return ProvenanceMetadata(
        uploaded_by=_field(raw, UPLOADED_BY_KEY),
        uploaded_at=_field(raw, UPLOADED_AT_KEY),
    )


def provenance_for(nickname: Optional[str], moment: Optional[datetime.datetime] = None) -> ProvenanceMetadata:
    """Provenance attached after a successful upload."""
    return ProvenanceMetadata(
        uploaded_by=nickname or UNKNOWN,
        uploaded_at=format_uploaded_at(moment),
    )
