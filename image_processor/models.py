"""SQLAlchemy models and the closed value sets they store."""
import enum

from sqlalchemy import Column, String, BigInteger, JSON
from image_processor.db import Base


class Action(str, enum.Enum):
    """Named transformation. Order of actions in a pipeline is significant."""
    RESIZE = "Resize"
    MINIATURE = "Miniature"
    WATERMARK = "Watermark"
    GRAYSCALE = "Grayscale"


class ImageStatus(str, enum.Enum):
    """Processing state. Pending is initial; Done and Failed are terminal."""
    PENDING = "Pending"
    DONE = "Done"
    FAILED = "Failed"


DEFAULT_ACTIONS = [Action.RESIZE.value]


class Image(Base):
    """Image record: one row per upload."""
    __tablename__ = "images"

    id = Column(String, primary_key=True)
    filename = Column(String, nullable=False)
    file_size = Column(BigInteger, nullable=False)
    raw_image_object_key = Column(String, nullable=False)  # Immutable once written
    processed_image_object_key = Column(String, nullable=False, default="")  # Empty until Done
    actions = Column(JSON, nullable=False)  # Ordered list of action names
    status = Column(String, nullable=False, default=ImageStatus.PENDING.value)
