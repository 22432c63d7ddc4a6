"""
Owner mapping administration: which HubSpot owner is which local account
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dealboard.models.base import get_db
from dealboard.models.deals import OwnerMapping
from dealboard.services.owner_resolver import OwnerLinkConflict, OwnerResolver

router = APIRouter(prefix="/owner-mappings", tags=["owner-mappings"])


class LinkRequest(BaseModel):
    user_id: str


def _mapping_dict(m: OwnerMapping) -> dict:
    return {
        "hubspot_owner_id": m.hubspot_owner_id,
        "email": m.email,
        "first_name": m.first_name,
        "last_name": m.last_name,
        "primary_team_name": m.primary_team_name,
        "team_names": m.team_names.split(" | ") if m.team_names else [],
        "is_archived": m.is_archived,
        "owner_user_id": m.owner_user_id,
        "owner_username": m.owner_username,
        "last_seen_at": m.last_seen_at.isoformat() if m.last_seen_at else None,
        "last_owner_sync_at": m.last_owner_sync_at.isoformat() if m.last_owner_sync_at else None,
    }


@router.get("")
async def list_owner_mappings(
    q: Optional[str] = Query(None, description="Search id, email, name, team or username"),
    unlinked_only: bool = Query(False),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    mappings = OwnerResolver(db).search(q, unlinked_only=unlinked_only, limit=limit)
    return {"count": len(mappings), "mappings": [_mapping_dict(m) for m in mappings]}


@router.put("/{owner_id}/link")
async def link_owner(owner_id: str, payload: LinkRequest, db: Session = Depends(get_db)):
    """Link a HubSpot owner to a local account; automatic sync never overrides it"""
    try:
        mapping = OwnerResolver(db).link(owner_id, payload.user_id)
    except OwnerLinkConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    if mapping is None:
        raise HTTPException(status_code=404, detail="Owner mapping or user not found")
    return _mapping_dict(mapping)


@router.delete("/{owner_id}/link")
async def unlink_owner(owner_id: str, db: Session = Depends(get_db)):
    mapping = OwnerResolver(db).unlink(owner_id)
    if mapping is None:
        raise HTTPException(status_code=404, detail=f"Owner mapping {owner_id} not found")
    return _mapping_dict(mapping)
