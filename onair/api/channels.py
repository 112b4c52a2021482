from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from onair.db import get_db
from onair.errors import OnAirError
from onair.models.channel import Channel
from onair.models.program import ProgramEntry
from onair.schemas.channel import ChannelIn, ChannelOut
from onair.services.orchestrator import authorize_channel
from onair.services.session_machine import get_session

router = APIRouter(prefix="/channels", tags=["channels"])


def _owned_channel(db: Session, channel_id: str, account_id: str | None) -> Channel:
    try:
        return authorize_channel(db, channel_id, account_id)
    except OnAirError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("", response_model=ChannelOut)
def create_channel(
    payload: ChannelIn,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Channel name cannot be empty.")
    if db.query(Channel).filter(Channel.name == name).first():
        raise HTTPException(status_code=400, detail="A channel with this name already exists.")
    channel = Channel(
        name=name,
        owner_account=(x_account_id or "").strip() or None,
        description=(payload.description or "").strip() or None,
        rtmp_in_key=(payload.rtmp_in_key or "").strip() or None,
    )
    db.add(channel)
    db.commit()
    db.refresh(channel)
    return channel


@router.get("", response_model=list[ChannelOut])
def list_channels(x_account_id: str | None = Header(default=None), db: Session = Depends(get_db)):
    query = db.query(Channel)
    account = (x_account_id or "").strip()
    if account:
        query = query.filter(Channel.owner_account == account)
    return query.order_by(Channel.created_at.asc()).all()


@router.get("/{channel_id}", response_model=ChannelOut)
def get_channel(channel_id: str, x_account_id: str | None = Header(default=None), db: Session = Depends(get_db)):
    return _owned_channel(db, channel_id, x_account_id)


@router.put("/{channel_id}", response_model=ChannelOut)
def update_channel(
    channel_id: str,
    name: str | None = None,
    description: str | None = None,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    channel = _owned_channel(db, channel_id, x_account_id)
    if name is not None:
        cleaned = name.strip()
        if not cleaned:
            raise HTTPException(status_code=400, detail="Channel name cannot be empty.")
        clash = db.query(Channel).filter(Channel.name == cleaned, Channel.id != channel_id).first()
        if clash:
            raise HTTPException(status_code=400, detail="A channel with this name already exists.")
        channel.name = cleaned
    if description is not None:
        channel.description = description.strip() or None
    db.commit()
    db.refresh(channel)
    return channel


@router.delete("/{channel_id}")
def delete_channel(channel_id: str, x_account_id: str | None = Header(default=None), db: Session = Depends(get_db)):
    channel = _owned_channel(db, channel_id, x_account_id)
    if get_session(db, channel_id) is not None:
        # Session history belongs to the channel for good.
        raise HTTPException(status_code=409, detail="Channel has broadcast history and cannot be deleted.")
    db.query(ProgramEntry).filter(ProgramEntry.channel_id == channel_id).delete(synchronize_session=False)
    db.delete(channel)
    db.commit()
    return {"ok": True}
