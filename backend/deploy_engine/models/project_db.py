from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from deploy_engine.database import Base


class ProjectDB(Base):
    """Database model for deployable projects."""

    __tablename__ = "deploy_projects"
    # AUTOINCREMENT keeps SQLite from reusing ids, which port allocation relies on.
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    domain = Column(String(255), nullable=False, default="")
    git_url = Column(String(512), nullable=False, default="")
    git_branch = Column(String(128), nullable=False, default="main")
    deploy_key = Column(Text, nullable=False, default="")
    framework = Column(String(64), nullable=False, default="")
    install_command = Column(String(512), nullable=False, default="")
    build_command = Column(String(512), nullable=False, default="")
    start_command = Column(String(512), nullable=False, default="")
    port = Column(Integer, nullable=False, default=0)
    status = Column(String(32), nullable=False, default="pending")
    current_build = Column(Integer, nullable=False, default=0)
    auto_deploy = Column(Boolean, nullable=False, default=False)
    webhook_token = Column(String(64), nullable=False, unique=True, index=True)
    host_id = Column(Integer, nullable=False, default=0)
    env_vars = Column(Text, nullable=False, default="")  # JSON-encoded list of {key, value}
    error_msg = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC), nullable=False)

    deployments = relationship(
        "DeploymentDB",
        back_populates="project",
        order_by="DeploymentDB.build_num",
    )


class DeploymentDB(Base):
    """Database model for one build attempt of a project."""

    __tablename__ = "deploy_deployments"
    __table_args__ = (Index("ix_deploy_deployments_project_build", "project_id", "build_num"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("deploy_projects.id"), nullable=False, index=True)
    build_num = Column(Integer, nullable=False)
    git_commit = Column(String(64), nullable=False, default="")
    status = Column(String(32), nullable=False, default="building")
    log_file = Column(String(512), nullable=False, default="")
    duration = Column(Integer, nullable=False, default=0)  # seconds
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False)

    project = relationship("ProjectDB", back_populates="deployments")
