from sqlalchemy import JSON, Column, DateTime, Index, String
from sqlalchemy.dialects.postgresql import JSONB

from database.base import Base


class ProjectRecord(Base):
    """
    One saved project document.

    ``project_data`` holds the complete document as camelCase JSON. Each save
    overwrites it; ``created_at`` survives overwrites.
    """

    __tablename__ = "editor_projects"

    project_id = Column(String, primary_key=True, index=True, nullable=False)
    project_name = Column(String, nullable=False)
    project_data = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    last_modified = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_editor_projects_last_modified", last_modified),
        Index("ix_editor_projects_project_name", project_name),
    )

    def __repr__(self):
        return (
            f"<ProjectRecord project_id={self.project_id} "
            f"project_name={self.project_name} last_modified={self.last_modified}>"
        )
