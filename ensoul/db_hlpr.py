import os
import logging
from typing import Callable

from google.cloud import secretmanager
from google.oauth2 import service_account
from google.auth import default as google_auth_default

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from ensoul import settings
from ensoul.entities import Base

logger = logging.getLogger("ensoul_backend")


class DbConnection:
    def __init__(self, database_url: str | None = None) -> None:
        self.PROJECT_ID   = settings.PROJECT_ID
        self.DB_HOST      = settings.DB_HOST
        self.DB_PORT      = settings.DB_PORT
        self.DB_NAME      = settings.DB_NAME
        self.DB_USER      = settings.DB_USER
        self.DB_PASSWORD  = settings.DB_PASSWORD or ""
        self.DB_SECRET_ID = settings.DB_SECRET_ID or ""
        self._secret_client = None
        self._engine: Engine | None = None
        self._sessionmaker: sessionmaker | None = None

        # !###############################################
        # !   EITHER A FULL DATABASE_URL IN THE .ENV FILE
        # !   OR DISCRETE DB_* VARIABLES (+ SECRET MANAGER)
        # !###############################################
        self.DATABASE_URL = database_url or settings.DATABASE_URL
        self.IS_LOCAL = bool(self.DATABASE_URL)
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+pg8000://{self.DB_USER}:{self._get_db_password_lazy()}"
                f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            )

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
            if self._secret_client is None:
                self._secret_client = secretmanager.SecretManagerServiceClient(credentials=self._build_creds())
            name = self._secret_client.secret_version_path(self.PROJECT_ID, self.DB_SECRET_ID, "latest")
            resp = self._secret_client.access_secret_version(request={"name": name})
            self.DB_PASSWORD = resp.payload.data.decode("utf-8")
            return self.DB_PASSWORD
        raise RuntimeError("No DB_PASSWORD and no Secret Manager configured")

    def get_engine(self) -> Engine:
        if self._engine is None:
            kwargs = {"future": True, "pool_pre_ping": True}
            if self.DATABASE_URL.startswith("postgresql+pg8000"):
                # pg8000 supports 'timeout' in seconds
                kwargs["connect_args"] = {"timeout": 10}  # fail in 10s instead of hanging forever
            logger.info(f"[DB] Connecting to {self.DATABASE_URL.split('@')[-1]}")
            self._engine = create_engine(self.DATABASE_URL, **kwargs)
        return self._engine

    def create_all(self) -> None:
        Base.metadata.create_all(self.get_engine())

    # -------- SQLAlchemy Session factory --------
    def build_db_session_factory(self) -> Callable[[], Session]:
        if self._sessionmaker is None:
            self._sessionmaker = sessionmaker(
                bind=self.get_engine(),
                autoflush=False,
                expire_on_commit=False,
                future=True,
            )

        def _factory() -> Session:
            return self._sessionmaker()

        return _factory
