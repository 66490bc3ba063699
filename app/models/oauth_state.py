"""
Short-lived OAuth state tokens binding a provider callback to the user that
started the connect flow.
"""

import uuid
from sqlalchemy import Column, String, DateTime, Enum, Index, func
from sqlalchemy.dialects.postgresql import UUID
from app.core.database import Base
from app.models.integration import IntegrationKind


class OAuthState(Base):
    """
    Pending OAuth handshake.

    Single use: the row is deleted when a callback consumes it. Rows that are
    never consumed are purged once expires_at has passed.
    """
    __tablename__ = "oauth_states"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    state = Column(String(128), nullable=False, unique=True)
    user_id = Column(UUID(as_uuid=True), nullable=False)
    kind = Column(Enum(IntegrationKind, values_callable=lambda x: [e.value for e in x]), nullable=False)
    redirect_url = Column(String, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index('ix_oauth_states_user_kind', 'user_id', 'kind'),
        Index('ix_oauth_states_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<OAuthState(user_id={self.user_id}, kind={self.kind.value}, expires_at={self.expires_at})>"
