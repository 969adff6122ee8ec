# multichat/db_connection.py
import logging
import os
from typing import Callable

from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from multichat.entities import Base

logger = logging.getLogger("multichat_backend")


class DbConnection:
    """
    Builds the SQLAlchemy engine + session factory shared by every store.

    Either DATABASE_URL is set (local / tests), or the URL is assembled from
    DB_* vars with the password read from Secret Manager when DB_PASSWORD is empty.
    """

    def __init__(self, database_url: str | None = None) -> None:
        # ---- env config (shared) ----
        self.PROJECT_ID   = os.getenv("GOOGLE_CLOUD_PROJECT", "")
        self.DB_HOST      = os.getenv("DB_HOST", "localhost")
        self.DB_PORT      = int(os.getenv("DB_PORT", "5432"))
        self.DB_NAME      = os.getenv("DB_NAME", "")
        self.DB_USER      = os.getenv("DB_USER", "")
        self.DB_PASSWORD  = os.getenv("DB_PASSWORD", "")
        self.DB_SECRET_ID = os.getenv("DB_SECRET_ID", "")

        self.DATABASE_URL = database_url if database_url is not None else os.getenv("DATABASE_URL", "")
        self.IS_LOCAL = True
        if not self.DATABASE_URL:
            self.IS_LOCAL = False
            self.DATABASE_URL = (
                f"postgresql+pg8000://{self.DB_USER}:{self._get_db_password_lazy()}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

    # -------- GCP auth / creds --------
    def _build_creds(self):
        key_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")
        scopes = ["https://www.googleapis.com/auth/cloud-platform"]
        if key_path and os.path.exists(key_path):
            return service_account.Credentials.from_service_account_file(key_path, scopes=scopes)
        creds, _ = google_auth_default(scopes=scopes)
        return creds

    # -------- DB password (Secret Manager) --------
    def _get_db_password_lazy(self) -> str:
        if self.DB_PASSWORD:
            return self.DB_PASSWORD
        if self.DB_SECRET_ID:
            client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DATABASE_URL, no DB_PASSWORD and no Secret Manager configured")

    # -------- Engine --------
    def get_engine(self) -> Engine:
        if self._engine is None:
            if self.DATABASE_URL.startswith("sqlite"):
                # worker threads share the file database
                self._engine = create_engine(
                    self.DATABASE_URL,
                    future=True,
                    connect_args={"check_same_thread": False, "timeout": 30},
                )
            else:
                logger.info(f"[DB] Connecting to {self.DATABASE_URL.split('@')[-1]}")
                # pg8000 supports 'timeout' in seconds
                self._engine = create_engine(
                    self.DATABASE_URL,
                    future=True,
                    pool_pre_ping=True,
                    connect_args={"timeout": 10} if "pg8000" in self.DATABASE_URL else {},
                )
        return self._engine

    def create_schema(self) -> None:
        Base.metadata.create_all(self.get_engine())

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                autocommit=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
