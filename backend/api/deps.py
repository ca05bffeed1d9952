"""
Store Health API Dependencies

Dependency injection for DB sessions and engine services.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.escalation import EscalationEngine
from alerts.manager import AlertManager
from alerts.notifier import Notifier, build_notifier
from db.session import AsyncSessionLocal
from health.kpi_calculator import KpiCalculator
from health.threshold_checker import ThresholdChecker
from voice.dispatcher import VoiceCallDispatcher


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_notifier() -> Notifier:
    return build_notifier()


def get_kpi_calculator(db: AsyncSession = Depends(get_db)) -> KpiCalculator:
    return KpiCalculator(db)


def get_threshold_checker(db: AsyncSession = Depends(get_db)) -> ThresholdChecker:
    return ThresholdChecker(db)


def get_alert_manager(db: AsyncSession = Depends(get_db)) -> AlertManager:
    return AlertManager(db)


def get_call_dispatcher(db: AsyncSession = Depends(get_db)) -> VoiceCallDispatcher:
    return VoiceCallDispatcher(db)


def get_escalation_engine(
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: VoiceCallDispatcher = Depends(get_call_dispatcher),
) -> EscalationEngine:
    return EscalationEngine(db, notifier=notifier, dispatcher=dispatcher)
