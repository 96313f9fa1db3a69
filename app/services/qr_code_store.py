"""Record store access for QR codes and their webhooks, scoped to the owning account."""
from typing import List, Optional, Tuple

from sqlalchemy import delete, func
from sqlmodel import Session, select

from app.core.clock import utcnow
from app.models.qr_code import QRCode
from app.models.webhook import WebhookConfig, WebhookDelivery
from app.services.store import store_call


class QRCodeStore:
    def __init__(self, session: Session, clock=utcnow):
        self.session = session
        self.clock = clock

    @store_call
    def list_for_user(
        self, user_id: int, qr_type: Optional[str], limit: int, offset: int
    ) -> Tuple[int, List[QRCode]]:
        conditions = [QRCode.user_id == user_id]
        if qr_type:
            conditions.append(QRCode.type == qr_type)

        total = self.session.exec(select(func.count()).select_from(QRCode).where(*conditions)).one()
        qr_codes = self.session.exec(
            select(QRCode)
            .where(*conditions)
            .order_by(QRCode.created_at.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return total, list(qr_codes)

    @store_call
    def get_owned(self, qr_id: int, user_id: int) -> Optional[QRCode]:
        return self.session.exec(
            select(QRCode).where(QRCode.id == qr_id, QRCode.user_id == user_id)
        ).first()

    @store_call
    def save(self, record):
        """Insert or update any record and return it refreshed."""
        if getattr(record, "id", None) is not None:
            record.updated_at = self.clock()
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    @store_call
    def delete(self, qr: QRCode) -> None:
        """Delete a QR code together with its webhook and delivery log."""
        config = self.session.exec(
            select(WebhookConfig).where(WebhookConfig.qr_code_id == qr.id)
        ).first()
        if config:
            self.session.exec(delete(WebhookDelivery).where(WebhookDelivery.webhook_config_id == config.id))
            self.session.delete(config)
        self.session.delete(qr)
        self.session.commit()

    @store_call
    def get_webhook(self, qr_id: int, active_only: bool = False) -> Optional[WebhookConfig]:
        query = select(WebhookConfig).where(WebhookConfig.qr_code_id == qr_id)
        if active_only:
            query = query.where(WebhookConfig.is_active.is_(True))
        return self.session.exec(query).first()

    @store_call
    def delete_webhook(self, config: WebhookConfig) -> None:
        self.session.exec(delete(WebhookDelivery).where(WebhookDelivery.webhook_config_id == config.id))
        self.session.delete(config)
        self.session.commit()

    @store_call
    def list_deliveries(
        self, config_id: int, status: Optional[str], limit: int, offset: int
    ) -> Tuple[int, List[WebhookDelivery]]:
        conditions = [WebhookDelivery.webhook_config_id == config_id]
        if status:
            conditions.append(WebhookDelivery.status == status)

        total = self.session.exec(
            select(func.count()).select_from(WebhookDelivery).where(*conditions)
        ).one()
        deliveries = self.session.exec(
            select(WebhookDelivery)
            .where(*conditions)
            .order_by(WebhookDelivery.created_at.desc(), WebhookDelivery.id.desc())
            .offset(offset)
            .limit(limit)
        ).all()
        return total, list(deliveries)
