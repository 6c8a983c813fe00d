"""Service model — a registered repository whose pipelines we track."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from scantrack.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Service(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "services"

    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    repo_url: Mapped[str] = mapped_column(String(500), nullable=False)

    # Branch the scan pipeline is triggered on
    ref: Mapped[str] = mapped_column(String(255), nullable=False, default="main")

    # Repository name in the CI container registry (None = no image is built)
    image_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<Service name={self.name!r}>"
