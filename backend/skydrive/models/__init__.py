"""Import all models so SQLAlchemy metadata knows about them."""
from skydrive.models.base import Base
from skydrive.models.file_record import FileRecord

__all__ = ["Base", "FileRecord"]
