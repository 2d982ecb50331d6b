import uuid

from sqlalchemy import Column, String, Boolean, DateTime, Integer, LargeBinary
from sqlalchemy.sql import func

from app.core.database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(100), unique=True, index=True, nullable=False)
    display_name = Column(String(255), nullable=True)

    # Encrypted WebUntis secret (AES-GCM)
    untis_secret_ciphertext = Column(LargeBinary, nullable=True)
    untis_secret_nonce = Column(LargeBinary, nullable=True)
    untis_secret_key_version = Column(Integer, nullable=True)

    timezone = Column(String(64), nullable=False, default="Europe/Berlin")
    is_admin = Column(Boolean, default=False)
    is_user_manager = Column(Boolean, default=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    last_active_at = Column(DateTime, nullable=True, index=True)

    @property
    def has_untis_secret(self) -> bool:
        return bool(self.untis_secret_ciphertext and self.untis_secret_nonce)
