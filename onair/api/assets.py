from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from onair.db import get_db
from onair.models.program import ProgramEntry
from onair.models.video_asset import VideoAsset
from onair.schemas.video_asset import VideoAssetIn, VideoAssetOut

router = APIRouter(prefix="/assets", tags=["assets"])


def _owned_asset(db: Session, asset_id: str, account_id: str | None) -> VideoAsset:
    asset = db.get(VideoAsset, asset_id)
    if not asset or (asset.owner_account and asset.owner_account != (account_id or "").strip()):
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@router.post("", response_model=VideoAssetOut)
def create_asset(
    payload: VideoAssetIn,
    x_account_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    asset = VideoAsset(
        owner_account=(x_account_id or "").strip() or None,
        title=payload.title.strip(),
        file_url=payload.file_url.strip(),
        hls_url=(payload.hls_url or "").strip() or None,
        duration_minutes=payload.duration_minutes,
        thumbnail_url=(payload.thumbnail_url or "").strip() or None,
    )
    db.add(asset)
    db.commit()
    db.refresh(asset)
    return asset


@router.get("", response_model=list[VideoAssetOut])
def list_assets(x_account_id: str | None = Header(default=None), db: Session = Depends(get_db)):
    query = db.query(VideoAsset)
    account = (x_account_id or "").strip()
    if account:
        query = query.filter(VideoAsset.owner_account == account)
    return query.order_by(VideoAsset.created_at.desc()).all()


@router.delete("/{asset_id}")
def delete_asset(asset_id: str, x_account_id: str | None = Header(default=None), db: Session = Depends(get_db)):
    asset = _owned_asset(db, asset_id, x_account_id)
    in_use = db.query(ProgramEntry).filter(ProgramEntry.asset_id == asset_id).count()
    if in_use:
        raise HTTPException(status_code=409, detail=f"Asset is used by {in_use} scheduled program(s).")
    db.delete(asset)
    db.commit()
    return {"ok": True}
