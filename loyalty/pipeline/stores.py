"""
Store resolution for an upload.

A receipt names its store either explicitly (QR code / link-store) or
implicitly through the TIN printed on it. Resolution happens once, at
pipeline entry, and yields exactly one outcome.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from sqlalchemy.orm import Session

from loyalty import repository
from loyalty.models import StoreModel
from loyalty.schemas import StoreCandidate


@dataclass(frozen=True)
class ExplicitStore:
    store_id: str


@dataclass(frozen=True)
class StoreByTin:
    tin: Optional[str]


StoreRef = Union[ExplicitStore, StoreByTin]


@dataclass
class ResolvedStore:
    store: StoreModel


@dataclass
class NeedsSelection:
    """Zero or several stores share the TIN; the customer must pick one."""
    tin: str
    candidates: list[StoreModel] = field(default_factory=list)


@dataclass
class StoreNotFound:
    lookup: Optional[str] = None


StoreResolution = Union[ResolvedStore, NeedsSelection, StoreNotFound]


def store_ref_for(store_id: Optional[str], tin: Optional[str]) -> StoreRef:
    return ExplicitStore(store_id) if store_id else StoreByTin(tin)


def resolve_store(db: Session, ref: StoreRef) -> StoreResolution:
    if isinstance(ref, ExplicitStore):
        store = repository.get_store(db, ref.store_id)
        return ResolvedStore(store) if store is not None else StoreNotFound(ref.store_id)

    if not ref.tin:
        return StoreNotFound(None)
    matches = repository.find_upload_stores_by_tin(db, ref.tin)
    if len(matches) == 1:
        return ResolvedStore(matches[0])
    return NeedsSelection(tin=ref.tin, candidates=matches)


def store_candidate(store: StoreModel) -> StoreCandidate:
    return StoreCandidate(
        id=store.id,
        name=store.name,
        address=store.address or "",
        branch_name=store.branch_name,
        tin=store.tin,
    )
