"""
Database models and operations for PatchPilot
Uses SQLite for persistent storage of tracked stacks, containers and candidate releases
"""

from datetime import datetime, timezone
from typing import Optional, List, Tuple
from sqlalchemy import create_engine, Column, String, Integer, Boolean, DateTime, JSON, ForeignKey, Text, Table, CheckConstraint, text
from sqlalchemy.orm import declarative_base, sessionmaker, Session, relationship
from sqlalchemy.pool import StaticPool
import os
import logging

from updates.version_helper import split_image

logger = logging.getLogger(__name__)


def utcnow():
    """Helper to get timezone-aware UTC datetime for database defaults"""
    return datetime.now(timezone.utc)


Base = declarative_base()


# Candidate releases are shared by every container that was on the same version
# when they were discovered
container_candidate_versions = Table(
    "container_candidate_versions",
    Base.metadata,
    Column("container_id", Integer, ForeignKey("containers.id", ondelete="CASCADE"), primary_key=True),
    Column("candidate_version_id", Integer, ForeignKey("candidate_versions.id", ondelete="CASCADE"), primary_key=True),
)


class ComposeStack(Base):
    """A compose stack, addressed either by a local config file or by name on a remote stack manager"""
    __tablename__ = "compose_stacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stack_name = Column(String, nullable=False, unique=True)
    config_file = Column(String, nullable=True)  # Absolute path to the compose file
    remote_hosted = Column(Boolean, default=False, nullable=False)  # Managed by Portainer
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            'NOT (remote_hosted = 1 AND config_file IS NOT NULL)',
            name='single_addressing_mode'
        ),
    )

    containers = relationship("ManagedContainer", back_populates="stack", cascade="all, delete-orphan")
    apps = relationship("MultiContainerApp", back_populates="stack", cascade="all, delete-orphan")

    @property
    def has_addressing(self) -> bool:
        return bool(self.config_file) or bool(self.remote_hosted)


class MultiContainerApp(Base):
    """Derived grouping of containers that form one logical application"""
    __tablename__ = "multi_container_apps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String, nullable=False)
    stack_id = Column(Integer, ForeignKey("compose_stacks.id", ondelete="CASCADE"), nullable=False)

    stack = relationship("ComposeStack", back_populates="apps")
    containers = relationship("ManagedContainer", back_populates="multi_container_app")


class ManagedContainer(Base):
    """A deployed container tracked for upstream releases"""
    __tablename__ = "containers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    version = Column(String, nullable=True)  # Current version, None when it can't be determined
    target_image = Column(String, nullable=False)  # Full image reference as written in the compose file
    version_regex = Column(String, nullable=True)  # Shape of the current version
    github_version_regex = Column(String, nullable=True)  # Shape of upstream release tags
    github_repo = Column(String, nullable=True)  # "owner/repo"
    override_github_repo = Column(String, nullable=True)  # Operator supplied "owner/repo"
    secondary_github_repos = Column(JSON, nullable=True)  # List of "owner/repo" release-note sources
    is_secondary = Column(Boolean, default=False, nullable=False)  # Sidecar that never drives a check
    ignore_container = Column(Boolean, default=False, nullable=False)
    stack_id = Column(Integer, ForeignKey("compose_stacks.id", ondelete="CASCADE"), nullable=False)
    multi_container_app_id = Column(Integer, ForeignKey("multi_container_apps.id", ondelete="SET NULL"), nullable=True)
    last_version_check = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    stack = relationship("ComposeStack", back_populates="containers")
    multi_container_app = relationship("MultiContainerApp", back_populates="containers")
    candidate_versions = relationship(
        "CandidateVersion",
        secondary=container_candidate_versions,
        back_populates="containers",
    )

    @property
    def effective_repo(self) -> Optional[str]:
        """Override repository when set, otherwise the resolved one"""
        return self.override_github_repo or self.github_repo

    @property
    def repo_parts(self) -> Optional[Tuple[str, str]]:
        repo = self.effective_repo
        if not repo or '/' not in repo:
            return None
        owner, name = repo.split('/', 1)
        return owner, name

    @property
    def image_repository(self) -> str:
        """Image reference without its tag"""
        return split_image(self.target_image)[0]

    def __repr__(self):
        return f"<ManagedContainer {self.name} {self.target_image}>"


class CandidateVersion(Base):
    """An upstream release newer than what is deployed"""
    __tablename__ = "candidate_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    version_number = Column(String, nullable=False)  # Release tag
    name = Column(String, nullable=True)  # Release title
    body = Column(Text, nullable=True)  # Release notes, secondary repo notes appended
    prerelease = Column(Boolean, default=False, nullable=False)
    breaking = Column(Boolean, default=False, nullable=False)  # Keyword detection
    ai_breaking = Column(Boolean, nullable=True)
    ai_summary = Column(Text, nullable=True)
    security_analysis = Column(Text, nullable=True)
    suspected_malicious = Column(Boolean, nullable=True)
    ignored = Column(Boolean, default=False, nullable=False)
    notified = Column(Boolean, default=False, nullable=False)
    discovered_at = Column(DateTime, default=utcnow, nullable=False)

    containers = relationship(
        "ManagedContainer",
        secondary=container_candidate_versions,
        back_populates="candidate_versions",
    )

    def __repr__(self):
        return f"<CandidateVersion {self.version_number}>"


class UpdateAttempt(Base):
    """Record of one applied (or failed) update"""
    __tablename__ = "update_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    container_id = Column(Integer, ForeignKey("containers.id", ondelete="SET NULL"), nullable=True)
    stack_id = Column(Integer, ForeignKey("compose_stacks.id", ondelete="SET NULL"), nullable=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    used_plan = Column(Text, nullable=True)
    stdout = Column(Text, nullable=True)
    stderr = Column(Text, nullable=True)
    exit_code = Column(Integer, nullable=True)
    failed_command = Column(String, nullable=True)

    @property
    def succeeded(self) -> bool:
        return self.failed_command is None


class GlobalSettings(Base):
    """Runtime settings adjustable without a restart"""
    __tablename__ = "global_settings"

    id = Column(Integer, primary_key=True, default=1)
    __table_args__ = (
        # Ensure only one settings row exists
        CheckConstraint('id = 1', name='single_settings_row'),
    )
    auto_update_enabled = Column(Boolean, default=False)
    auto_update_delay_hours = Column(Integer, default=0)  # Minimum age of a release before auto-updating
    security_scanning_enabled = Column(Boolean, default=False)  # AI review of the upstream diff
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class DatabaseManager:
    """Database connection and settings access"""

    ALLOWED_SETTINGS = {
        'auto_update_enabled', 'auto_update_delay_hours', 'security_scanning_enabled',
    }

    def __init__(self, db_path: str = "data/patchpilot.db"):
        self.db_path = db_path

        data_dir = os.path.dirname(db_path)
        if data_dir:
            os.makedirs(data_dir, exist_ok=True)

        # Note: SQLite doesn't support pool_timeout/pool_recycle, but timeout in connect_args works
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={
                "check_same_thread": False,
                "timeout": 20
            },
            poolclass=StaticPool,
            echo=False
        )

        self._configure_sqlite_pragmas()

        # Objects stay readable after commit so services can hand them to the notifier
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine)

        Base.metadata.create_all(bind=self.engine)

        self._initialize_defaults()

    def _configure_sqlite_pragmas(self):
        """Enable WAL and foreign keys"""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("PRAGMA journal_mode=WAL"))
                conn.execute(text("PRAGMA foreign_keys=ON"))
                conn.commit()
        except Exception as e:
            logger.warning(f"Could not configure SQLite pragmas: {e}")

    def _initialize_defaults(self):
        """Initialize default settings if they don't exist"""
        with self.get_session() as session:
            settings = session.query(GlobalSettings).first()
            if not settings:
                session.add(GlobalSettings(id=1))
                session.commit()

    def get_session(self) -> Session:
        """Get a database session"""
        return self.SessionLocal()

    # Global Settings
    def get_settings(self) -> GlobalSettings:
        """Get global settings"""
        with self.get_session() as session:
            return session.query(GlobalSettings).first()

    def update_settings(self, updates: dict) -> GlobalSettings:
        """Update global settings, ignoring unknown keys"""
        with self.get_session() as session:
            settings = session.query(GlobalSettings).first()

            for key, value in updates.items():
                if key not in self.ALLOWED_SETTINGS:
                    logger.warning(f"Rejected unknown setting key: {key}")
                    continue
                setattr(settings, key, value)
                logger.debug(f"Updated setting: {key} = {value}")

            settings.updated_at = utcnow()
            session.commit()
            return settings

    # Stacks and containers
    def get_stacks(self) -> List[ComposeStack]:
        with self.get_session() as session:
            return session.query(ComposeStack).order_by(ComposeStack.stack_name).all()

    def count_containers(self) -> int:
        with self.get_session() as session:
            return session.query(ManagedContainer).count()

    def get_update_attempts(self, container_id: Optional[int] = None) -> List[UpdateAttempt]:
        """Update history, newest first"""
        with self.get_session() as session:
            query = session.query(UpdateAttempt)
            if container_id is not None:
                query = query.filter(UpdateAttempt.container_id == container_id)
            return query.order_by(UpdateAttempt.started_at.desc()).all()

    def set_candidate_ignored(self, candidate_id: int, ignored: bool) -> bool:
        """Mark a candidate so it is never auto-applied or counted as newest"""
        with self.get_session() as session:
            candidate = session.get(CandidateVersion, candidate_id)
            if not candidate:
                return False
            candidate.ignored = ignored
            session.commit()
            return True

    def set_container_ignored(self, container_id: int, ignored: bool) -> bool:
        with self.get_session() as session:
            container = session.get(ManagedContainer, container_id)
            if not container:
                return False
            container.ignore_container = ignored
            session.commit()
            return True

    def set_override_repo(self, container_id: int, repo: Optional[str]) -> bool:
        """Pin a container to an operator chosen repository ("owner/repo")"""
        with self.get_session() as session:
            container = session.get(ManagedContainer, container_id)
            if not container:
                return False
            container.override_github_repo = repo.lower() if repo else None
            session.commit()
            return True
