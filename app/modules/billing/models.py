from app.database.database import Base
from sqlalchemy import Column, Integer, UniqueConstraint
from app.common.mixins import BaseMixin


class FolioRange(Base, BaseMixin):
    """Correlativo de folios por tenant y tipo de documento"""
    __tablename__ = "folio_ranges"

    document_type = Column(Integer, nullable=False)
    start_folio = Column(Integer, nullable=False, default=1)
    end_folio = Column(Integer, nullable=False, default=1000000)
    current_folio = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("tenant_id", "document_type", name="uq_folio_tenant_doc_type"),
    )
