from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, Boolean, ForeignKey, Index,
    Date, DateTime, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from db.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(Text, unique=True, nullable=False)
    username_normalized = Column(Text, unique=True, nullable=False)
    password_hash = Column(Text, nullable=False)
    display_name = Column(Text, nullable=False)
    nickname = Column(Text, nullable=True)  # profile override shown on leaderboards
    role = Column(Text, nullable=False, default="user")  # user | admin
    token_version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    enrollments = relationship("Enrollment", back_populates="user", cascade="all, delete-orphan")


class Challenge(Base):
    __tablename__ = "challenges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    description = Column(Text)
    challenge_type = Column(Text, nullable=False, default="plank")  # plank | squat
    start_date = Column(Date, nullable=True)
    number_of_days = Column(Integer, nullable=True)
    starting_value = Column(Integer, nullable=False, default=0)
    increment_per_day = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    is_team_challenge = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)  # bumped when target fields change
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    enrollments = relationship("Enrollment", back_populates="challenge", cascade="all, delete-orphan")
    attempts = relationship("Attempt", back_populates="challenge", cascade="all, delete-orphan")
    stats = relationship("ChallengeUserStats", back_populates="challenge", cascade="all, delete-orphan")
    teams = relationship("Team", back_populates="challenge", cascade="all, delete-orphan")


class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    challenge = relationship("Challenge", back_populates="teams")


class Enrollment(Base):
    """One row per user per challenge (a "user challenge")."""

    __tablename__ = "enrollments"
    __table_args__ = (
        UniqueConstraint("user_id", "challenge_id", name="uq_enrollment_user_challenge"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    display_name = Column(Text)
    joined_at = Column(DateTime, default=datetime.utcnow)
    current_day = Column(Integer, nullable=False, default=1)
    last_completed_day = Column(Integer, nullable=False, default=0)
    last_completed_date = Column(Date, nullable=True)
    status = Column(Text, nullable=False, default="active")  # active | completed
    missed_days_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="enrollments")
    challenge = relationship("Challenge", back_populates="enrollments")
    attempts = relationship("Attempt", back_populates="enrollment", cascade="all, delete-orphan")


class Attempt(Base):
    """Append-only day record. ``missed`` rows are calendar no-shows."""

    __tablename__ = "attempts"
    __table_args__ = (
        # At most one missed row and at most one terminal row per user/challenge/day.
        Index("ix_attempts_user_challenge_day_missed", "user_id", "challenge_id", "day", "missed", unique=True),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    enrollment_id = Column(Integer, ForeignKey("enrollments.id"), nullable=False)
    display_name = Column(Text)
    day = Column(Integer, nullable=False)
    target_value = Column(Integer, nullable=True)
    actual_value = Column(Integer, nullable=False, default=0)
    success = Column(Boolean, nullable=False, default=False)
    missed = Column(Boolean, nullable=False, default=False)
    challenge_version = Column(Integer, nullable=True)
    timestamp = Column(DateTime, nullable=False)  # logical "now" in the challenge timezone
    created_at = Column(DateTime, default=datetime.utcnow)

    challenge = relationship("Challenge", back_populates="attempts")
    enrollment = relationship("Enrollment", back_populates="attempts")


class UserStats(Base):
    __tablename__ = "user_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    display_name = Column(Text)
    total_plank_seconds = Column(Integer, nullable=False, default=0)
    best_plank_seconds = Column(Integer, nullable=False, default=0)
    total_squats = Column(Integer, nullable=False, default=0)
    best_squats = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ChallengeUserStats(Base):
    __tablename__ = "challenge_user_stats"
    __table_args__ = (
        UniqueConstraint("challenge_id", "user_id", name="uq_challenge_user_stats"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    challenge_id = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    display_name = Column(Text)
    movement_type = Column(Text, nullable=False)  # plank | squat
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    total_value = Column(Integer, nullable=False, default=0)
    best_value = Column(Integer, nullable=False, default=0)
    first_achieved_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    challenge = relationship("Challenge", back_populates="stats")
