from pydantic import BaseModel, Field


class VideoAssetIn(BaseModel):
    title: str = Field(..., min_length=1)
    file_url: str = Field(..., min_length=1)
    hls_url: str | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    thumbnail_url: str | None = None


class VideoAssetOut(BaseModel):
    id: str
    title: str
    file_url: str
    hls_url: str | None = None
    duration_minutes: int | None = None
    thumbnail_url: str | None = None

    class Config:
        from_attributes = True
