from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

PLACEHOLDER_NAME = "Processing…"


def _uuid() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    pass


class Deal(Base):
    __tablename__ = "deals"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False, default=PLACEHOLDER_NAME)
    description: Mapped[str] = mapped_column(Text, default="")
    uploaded_text: Mapped[str] = mapped_column(Text, default="")
    founding_team_json: Mapped[str] = mapped_column(Text, default="[]")
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    files: Mapped[list[DealFile]] = relationship("DealFile", back_populates="deal", cascade="all, delete-orphan")
    competitors: Mapped[list[Competitor]] = relationship("Competitor", back_populates="deal", cascade="all, delete-orphan")
    runs: Mapped[list[PipelineRun]] = relationship("PipelineRun", back_populates="deal", cascade="all, delete-orphan")


class DealFile(Base):
    __tablename__ = "deal_files"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    deal_id: Mapped[str] = mapped_column(String(32), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    filename: Mapped[str] = mapped_column(String(500), nullable=False)  # blob key
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), default="application/pdf")
    size: Mapped[int] = mapped_column(Integer, default=0)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    ai_file_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    deal: Mapped[Deal] = relationship("Deal", back_populates="files")


class Competitor(Base):
    __tablename__ = "competitors"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    deal_id: Mapped[str] = mapped_column(String(32), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    relevance: Mapped[str | None] = mapped_column(Text, nullable=True)
    competitor_source: Mapped[str] = mapped_column(String(50), default="")  # discovery category slug
    score: Mapped[str | None] = mapped_column(String(20), nullable=True)  # number or "UNCERTAIN"
    competitor_category: Mapped[str | None] = mapped_column(String(30), nullable=True)  # early-stage | well-funded | incumbent
    short_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    detailed_justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    deal: Mapped[Deal] = relationship("Deal", back_populates="competitors")


class PipelineRun(Base):
    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    deal_id: Mapped[str] = mapped_column(String(32), ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(40), default="initializing")
    label: Mapped[str] = mapped_column(String(300), default="")
    progress: Mapped[int] = mapped_column(Integer, default=0)
    output_json: Mapped[str] = mapped_column(Text, default="")
    error: Mapped[str] = mapped_column(Text, default="")
    access_token: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    deal: Mapped[Deal] = relationship("Deal", back_populates="runs")


class Person(Base):
    __tablename__ = "people"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    leadspicker_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    position: Mapped[str | None] = mapped_column(String(300), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    followers_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    company_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    company_linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    company_website_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    company_employee_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    company_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website_text_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    past_experiences: Mapped[str | None] = mapped_column(Text, nullable=True)
    education_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source_robot: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())
