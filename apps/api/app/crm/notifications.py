from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.crm.errors import NotFoundError
from app.crm.models import CRMNotification, utcnow


tracer = trace.get_tracer("app.crm.notifications")

SLA_BREACH_NOTIFICATION = "sla_breach"


class NotificationSink(Protocol):
    def create_notification(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None,
        created_at: datetime | None = None,
    ) -> CRMNotification: ...


class DbNotificationSink:
    def __init__(self, session: Session):
        self.session = session

    def create_notification(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        message: str,
        link: str | None,
        created_at: datetime | None = None,
    ) -> CRMNotification:
        with tracer.start_as_current_span("crm.notification.create") as span:
            span.set_attribute("notification_type", notification_type)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            notification = CRMNotification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                link=link,
                is_read=False,
                created_at=created_at or utcnow(),
            )
            self.session.add(notification)
            self.session.flush()
            span.set_attribute("notification_id", str(notification.id))
            return notification


class NotificationService:
    def exists_between(
        self,
        session: Session,
        *,
        user_id: str,
        notification_type: str,
        link: str | None,
        start: datetime,
        end: datetime,
    ) -> bool:
        found = session.scalar(
            select(CRMNotification.id)
            .where(
                and_(
                    CRMNotification.user_id == user_id,
                    CRMNotification.type == notification_type,
                    CRMNotification.link == link,
                    CRMNotification.created_at >= start,
                    CRMNotification.created_at < end,
                )
            )
            .limit(1)
        )
        return found is not None

    def list_for_user(self, session: Session, user_id: str, unread_only: bool = False) -> list[CRMNotification]:
        query = select(CRMNotification).where(CRMNotification.user_id == user_id)
        if unread_only:
            query = query.where(CRMNotification.is_read.is_(False))
        return list(session.scalars(query.order_by(CRMNotification.created_at.desc())).all())

    def mark_read(self, session: Session, user_id: str, notification_id: uuid.UUID) -> CRMNotification:
        notification = session.scalar(
            select(CRMNotification).where(
                and_(CRMNotification.id == notification_id, CRMNotification.user_id == user_id)
            )
        )
        if notification is None:
            raise NotFoundError("notification not found")
        notification.is_read = True
        session.add(notification)
        session.commit()
        return notification
