from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from onair.db import get_db
from onair.errors import OnAirError
from onair.schemas.program import ProgramIn, ProgramOut
from onair.services.orchestrator import authorize_channel
from onair.services.schedule_store import add_program, list_programs, remove_program

router = APIRouter(prefix="/schedules", tags=["schedules"])


def _authorize(db: Session, channel_id: str, account_id: str | None) -> None:
    try:
        authorize_channel(db, channel_id, account_id)
    except OnAirError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc


@router.post("", response_model=ProgramOut)
def create_program(
    channel_id: str,
    payload: ProgramIn,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    _authorize(db, channel_id, x_account_id)
    try:
        program = add_program(
            db,
            channel_id,
            title=payload.title,
            program_type=payload.type,
            start_time=payload.start_time,
            duration_minutes=payload.duration_minutes,
            asset_id=payload.asset_id,
            repeat_pattern=payload.repeat_pattern,
            owner_account=(x_account_id or "").strip() or None,
        )
    except OnAirError as exc:
        db.rollback()
        raise HTTPException(status_code=exc.status_code, detail=exc.message) from exc
    db.commit()
    db.refresh(program)
    return program


@router.get("", response_model=list[ProgramOut])
def list_schedule(channel_id: str, x_account_id: str | None = Header(default=None), db: Session = Depends(get_db)):
    _authorize(db, channel_id, x_account_id)
    return list_programs(db, channel_id)


@router.delete("/{program_id}")
def delete_program(
    program_id: str,
    channel_id: str,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    _authorize(db, channel_id, x_account_id)
    if not remove_program(db, channel_id, program_id):
        raise HTTPException(status_code=404, detail="Program not found")
    db.commit()
    return {"ok": True}
