from pydantic import BaseModel


class Clip(BaseModel):
    """A votable clip, as resolved from the clips table."""

    channel: str
    clip_id: str
    seq: int | None = None
    title: str | None = None
    blocked: bool = False
