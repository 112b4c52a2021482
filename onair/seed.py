from datetime import timedelta

from sqlalchemy.orm import Session

from onair.db import Base, SessionLocal, engine, utcnow
from onair.models.channel import Channel
from onair.models.video_asset import VideoAsset
from onair.services.schedule_store import add_program

DEMO_ASSETS = [
    ("Morning News", "https://cdn.example.com/vod/morning-news.mp4", 30),
    ("Nature Documentary", "https://cdn.example.com/vod/nature.mp4", 60),
    ("Music Hour", "https://cdn.example.com/vod/music-hour.mp4", 60),
]


def seed(db: Session | None = None) -> Channel:
    own_session = db is None
    if own_session:
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()
    try:
        channel = Channel(name="Demo Channel", description="Seeded demo channel", status="offline")
        db.add(channel)
        db.commit()
        db.refresh(channel)

        assets = []
        for title, file_url, minutes in DEMO_ASSETS:
            asset = VideoAsset(title=title, file_url=file_url, duration_minutes=minutes)
            db.add(asset)
            assets.append(asset)
        db.commit()

        # Back-to-back block starting at the top of the current hour, repeated daily.
        start = utcnow().replace(minute=0, second=0, microsecond=0)
        for asset in assets:
            add_program(
                db,
                channel.id,
                title=asset.title,
                program_type="vod",
                start_time=start,
                duration_minutes=asset.duration_minutes,
                asset_id=asset.id,
                repeat_pattern="daily",
            )
            start += timedelta(minutes=asset.duration_minutes)
        add_program(db, channel.id, title="Evening Live", program_type="live", start_time=start, duration_minutes=60)
        db.commit()
        db.refresh(channel)
        return channel
    finally:
        if own_session:
            db.close()


if __name__ == "__main__":
    seed()
