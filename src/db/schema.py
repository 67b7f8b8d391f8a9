"""Database tables / schema"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.core.models import utc_now


class Base(DeclarativeBase):
    pass


class DBGame(Base):
    __tablename__ = "games"
    id: Mapped[UUID] = mapped_column(primary_key=True)
    players: Mapped[list[dict[str, Any]]] = mapped_column(JSON)
    white_id: Mapped[Optional[UUID]] = mapped_column(index=True)
    black_id: Mapped[Optional[UUID]] = mapped_column(index=True)
    moves: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    starting_position: Mapped[str]
    position: Mapped[str]
    move_log: Mapped[str] = mapped_column(default="")
    status: Mapped[str]
    result: Mapped[Optional[str]]
    result_reason: Mapped[Optional[str]]
    time_control: Mapped[str]
    is_ranked: Mapped[bool] = mapped_column(default=False)
    draw_offers: Mapped[list[str]] = mapped_column(JSON, default=list)
    last_move_at: Mapped[Optional[datetime]]
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)


class DBUser(Base):
    __tablename__ = "users"
    id: Mapped[UUID] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(unique=True)
    rating: Mapped[int] = mapped_column(default=1200)
    games_played: Mapped[int] = mapped_column(default=0)
    games_won: Mapped[int] = mapped_column(default=0)
    games_lost: Mapped[int] = mapped_column(default=0)
    games_drawn: Mapped[int] = mapped_column(default=0)
    status: Mapped[str] = mapped_column(default="offline")
    last_active: Mapped[Optional[datetime]]
    current_game_id: Mapped[Optional[UUID]]
    created_at: Mapped[datetime] = mapped_column(default=utc_now)
