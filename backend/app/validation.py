from __future__ import annotations

import uuid
from typing import Annotated, Literal, Optional

from pydantic import AfterValidator, BeforeValidator, StringConstraints


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _strip_str(v):
    if v is None:
        return v
    return str(v).strip()


def _blank_to_none(v):
    if v is None:
        return None
    s = str(v).strip()
    return s or None


def _canonical_uuid(v: str) -> str:
    try:
        return str(uuid.UUID(v))
    except (TypeError, ValueError, AttributeError) as e:
        raise ValueError("must be a valid UUID") from e


EntryType = Annotated[Literal["IN", "OUT"], BeforeValidator(_to_upper_str)]
SyncState = Annotated[Literal["pending", "syncing", "synced", "failed"], BeforeValidator(_to_lower_str)]
Connectivity = Literal["online", "offline"]

# Branch ids are UUIDs minted by the cloud; normalise so the same branch never
# shows up under two spellings.
BranchId = Annotated[str, BeforeValidator(_strip_str), AfterValidator(_canonical_uuid)]
EntryId = Annotated[str, BeforeValidator(_strip_str), AfterValidator(_canonical_uuid)]

Category = Annotated[str, BeforeValidator(_strip_str), StringConstraints(min_length=1, max_length=50)]
_DescriptionText = Annotated[str, StringConstraints(max_length=2000)]
Description = Annotated[Optional[_DescriptionText], BeforeValidator(_blank_to_none)]
