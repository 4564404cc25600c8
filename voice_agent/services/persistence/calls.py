"""Call persistence service."""
from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from voice_agent.db.models import Call


class CallPersistenceService:
    """Service for persisting the call log."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_call(
        self, call_sid: str, caller_id: Optional[str] = None, transport: str = "turns"
    ) -> Call:
        """Create a new call record or return existing one."""
        existing_call = await self.get_call_by_sid(call_sid)
        if existing_call:
            return existing_call

        call = Call(
            call_sid=call_sid,
            caller_id=caller_id,
            transport=transport,
            status="in_progress",
        )
        self.db.add(call)
        await self.db.commit()
        await self.db.refresh(call)
        return call

    async def get_call_by_sid(self, call_sid: str) -> Optional[Call]:
        """Get call by Twilio call SID."""
        result = await self.db.execute(
            select(Call).where(Call.call_sid == call_sid)
        )
        return result.scalar_one_or_none()

    async def finish_call(
        self,
        call_sid: str,
        status: str,
        turn_count: int = 0,
        transcript: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[Call]:
        """Record the final status, turn count and transcript of a call."""
        call = await self.get_call_by_sid(call_sid)
        if call:
            call.status = status
            call.ended_at = ended_at or datetime.utcnow()
            call.turn_count = max(call.turn_count or 0, turn_count)
            if transcript:
                call.transcript = transcript
            await self.db.commit()
            await self.db.refresh(call)
        return call
