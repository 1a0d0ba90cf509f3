"""Session lifecycle and exclusive feature claims."""

from __future__ import annotations

import logging
from typing import List, Optional

from .ledger import CommitLedger
from .models import Feature, FeatureStats, FeatureStatus, Phase, Session, SessionState, SessionStatus
from .resumption import furthest_complete
from .specfirst_logging import log_claim_event
from .store import RelationalStore


logger = logging.getLogger("specfirst.sessions")


class SessionManager:
    """Thin policy layer over the relational store's session and claim rows."""

    def __init__(self, store: RelationalStore, ledger: Optional[CommitLedger] = None):
        self.store = store
        self.ledger = ledger

    async def start_session(self) -> Session:
        return await self.store.create_session()

    async def resume_or_start_session(self) -> SessionState:
        """Pick up the running session if there is one, otherwise start a new one.

        This is check-then-act: two processes racing here can both start a
        session. Claims stay exclusive regardless, because claiming is atomic.
        """
        session = await self.store.current_session()
        if session is None:
            session = await self.store.create_session()
            logger.info(f"Started new session {session.id}")
            return SessionState(session=session, resumed=False)

        feature: Optional[Feature] = None
        phase = Phase.NONE
        if session.current_feature_id:
            feature = await self.store.get_feature(session.current_feature_id)
            if feature is not None:
                phase = await self._recorded_phase(feature)
        logger.info(
            f"Resumed session {session.id}"
            + (f" on feature {feature.id} at {phase.value}" if feature else "")
        )
        return SessionState(session=session, resumed=True, current_feature=feature, current_phase=phase)

    async def _recorded_phase(self, feature: Feature) -> Phase:
        """Furthest phase the ledger holds for ``feature``, falling back to the store row."""
        if self.ledger is None:
            return feature.phase
        records = await self.ledger.all_for(feature.name)
        return furthest_complete({record.phase: True for record in records})

    async def claim_feature(self, session_id: str, feature_id: str) -> bool:
        """Claim a feature for a session. Returns False if another session owns it."""
        claimed = await self.store.claim_feature(session_id, feature_id)
        if claimed:
            logger.info(f"Session {session_id} claimed feature {feature_id}")
            log_claim_event("acquired", session_id, feature_id)
        else:
            logger.warning(f"Claim conflict: feature {feature_id} is not available to session {session_id}")
            log_claim_event("conflict", session_id, feature_id)
        return claimed

    async def release_feature(self, session_id: str, feature_id: str) -> bool:
        released = await self.store.release_feature(session_id, feature_id)
        if released:
            log_claim_event("released", session_id, feature_id)
        return released

    async def start_feature(self, session_id: str, feature_id: str) -> bool:
        """Claim a feature and mark it in progress."""
        if not await self.claim_feature(session_id, feature_id):
            return False
        await self.store.update_feature_status(feature_id, FeatureStatus.IN_PROGRESS)
        return True

    async def complete_feature(self, session_id: str, feature_id: str) -> bool:
        """Mark a claimed feature completed, count it on the session and release it."""
        feature = await self.store.get_feature(feature_id)
        if feature is None or feature.session_id != session_id:
            logger.warning(f"Session {session_id} cannot complete feature {feature_id} it does not hold")
            return False
        await self.store.update_feature_status(feature_id, FeatureStatus.COMPLETED)
        await self.store.increment_features_completed(session_id)
        await self.release_feature(session_id, feature_id)
        return True

    async def end_session(self, session_id: str, status: SessionStatus | str = SessionStatus.COMPLETED) -> bool:
        session = await self.store.get_session(session_id)
        if session is None:
            return False
        if session.current_feature_id:
            await self.release_feature(session_id, session.current_feature_id)
        ended = await self.store.end_session(session_id, status)
        logger.info(f"Ended session {session_id} as {SessionStatus(status).value}")
        return ended

    async def get_stats(self) -> FeatureStats:
        return await self.store.get_stats()

    async def list_features(self) -> List[Feature]:
        return await self.store.list_features()
