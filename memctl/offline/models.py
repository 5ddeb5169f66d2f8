"""Database models for the offline memory cache."""

from sqlalchemy import BigInteger, Column, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CachedMemory(Base):
    """Snapshot of a remote memory, scoped by org and project."""

    __tablename__ = "cached_memories"

    org = Column(String, primary_key=True)
    project = Column(String, primary_key=True)
    key = Column(String, primary_key=True)
    content = Column(Text, nullable=False)
    metadata_json = Column("metadata", Text)
    tags = Column(Text)
    priority = Column(Integer, default=0)
    updated_at = Column(BigInteger, nullable=False)

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "content": self.content,
            "metadata": self.metadata_json,
            "tags": self.tags,
            "priority": self.priority,
            "project": self.project,
            "org": self.org,
            "updated_at": self.updated_at,
        }


class SyncMeta(Base):
    """Last successful sync time (unix ms) for a scope."""

    __tablename__ = "sync_meta"

    org = Column(String, primary_key=True)
    project = Column(String, primary_key=True)
    last_sync_at = Column(BigInteger, nullable=False)
