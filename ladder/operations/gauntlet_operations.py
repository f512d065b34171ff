"""
Gauntlet Operations Module

Creation and status changes for gauntlets and their lineups. The surrounding
application normally owns these records; the helpers here give it (and the
test suite) one consistent way to set them up before handing them to the
ranking engine.
"""

from typing import List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ladder.database.models import Gauntlet, GauntletLineup, GauntletStatus, BoatType
from ladder.operations.session_context import SessionContextMixin
from ladder.utils.exceptions import ValidationError, NotFoundError
from ladder.utils.logger import setup_logger

logger = setup_logger(__name__)


class GauntletOperations(SessionContextMixin):
    """Business logic for gauntlet and lineup records."""

    def __init__(self, database):
        self.db = database
        self.logger = logger

    @staticmethod
    def _parse_boat_type(boat_type: Union[BoatType, str]) -> BoatType:
        if isinstance(boat_type, BoatType):
            return boat_type
        try:
            return BoatType(boat_type)
        except ValueError:
            valid = ', '.join(member.value for member in BoatType)
            raise ValidationError(f"Unknown boat type '{boat_type}' (expected one of {valid})")

    @staticmethod
    def _parse_status(status: Union[GauntletStatus, str]) -> GauntletStatus:
        if isinstance(status, GauntletStatus):
            return status
        try:
            return GauntletStatus(status)
        except ValueError:
            valid = ', '.join(member.value for member in GauntletStatus)
            raise ValidationError(f"Unknown gauntlet status '{status}' (expected one of {valid})")

    async def create_gauntlet(
        self,
        name: str,
        boat_type: Union[BoatType, str],
        created_by: Optional[str] = None,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> Gauntlet:
        """Create an active gauntlet for one boat class"""
        if not name or not name.strip():
            raise ValidationError("Gauntlet name is required")
        parsed_type = self._parse_boat_type(boat_type)

        async with self._get_session_context(session) as s:
            gauntlet = Gauntlet(
                name=name.strip(),
                description=description,
                boat_type=parsed_type,
                created_by=created_by,
                status=GauntletStatus.ACTIVE
            )
            s.add(gauntlet)
            await s.flush()
            self.logger.info(f"Created gauntlet {gauntlet.id} '{gauntlet.name}' ({parsed_type.value})")
            return gauntlet

    async def get_gauntlet(self, gauntlet_id: int, session: Optional[AsyncSession] = None) -> Gauntlet:
        async with self._get_session_context(session) as s:
            gauntlet = await s.get(Gauntlet, gauntlet_id)
            if not gauntlet:
                raise NotFoundError("Gauntlet", gauntlet_id)
            return gauntlet

    async def list_gauntlets(
        self,
        created_by: Optional[str] = None,
        status: Optional[Union[GauntletStatus, str]] = None,
        session: Optional[AsyncSession] = None
    ) -> List[Gauntlet]:
        """Gauntlets, newest first, optionally filtered by creator and status"""
        query = select(Gauntlet)
        if created_by is not None:
            query = query.where(Gauntlet.created_by == created_by)
        if status is not None:
            query = query.where(Gauntlet.status == self._parse_status(status))
        query = query.order_by(Gauntlet.created_at.desc(), Gauntlet.id.desc())

        async with self._get_session_context(session) as s:
            result = await s.execute(query)
            return list(result.scalars().all())

    async def update_gauntlet(
        self,
        gauntlet_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        boat_type: Optional[Union[BoatType, str]] = None,
        session: Optional[AsyncSession] = None
    ) -> Gauntlet:
        """
        Change the descriptive fields of a gauntlet. Arguments left as None
        are kept; status changes go through close_gauntlet.

        Raises:
            ValidationError: If the name is blank or the boat type unknown
            NotFoundError: If the gauntlet does not exist
        """
        if name is not None and not name.strip():
            raise ValidationError("Gauntlet name cannot be blank")
        parsed_type = self._parse_boat_type(boat_type) if boat_type is not None else None

        async with self._get_session_context(session) as s:
            gauntlet = await s.get(Gauntlet, gauntlet_id)
            if not gauntlet:
                raise NotFoundError("Gauntlet", gauntlet_id)

            if name is not None:
                gauntlet.name = name.strip()
            if description is not None:
                gauntlet.description = description
            if parsed_type is not None:
                gauntlet.boat_type = parsed_type
            await s.flush()

            self.logger.info(f"Updated gauntlet {gauntlet_id}")
            return gauntlet

    async def close_gauntlet(self, gauntlet_id: int, session: Optional[AsyncSession] = None) -> Gauntlet:
        """Stop a gauntlet from accepting new matches; its ladder stays readable"""
        async with self._get_session_context(session) as s:
            gauntlet = await s.get(Gauntlet, gauntlet_id)
            if not gauntlet:
                raise NotFoundError("Gauntlet", gauntlet_id)
            if gauntlet.status == GauntletStatus.CLOSED:
                return gauntlet
            gauntlet.status = GauntletStatus.CLOSED
            await s.flush()
            self.logger.info(f"Closed gauntlet {gauntlet_id}")
            return gauntlet

    async def create_lineup(
        self,
        gauntlet_id: int,
        name: Optional[str] = None,
        is_user_lineup: bool = False,
        boat_id: Optional[str] = None,
        saved_lineup_id: Optional[str] = None,
        session: Optional[AsyncSession] = None
    ) -> GauntletLineup:
        """
        Register a crew under a gauntlet. The lineup holds no position until
        it is entered into the ladder or races its first match.
        """
        async with self._get_session_context(session) as s:
            gauntlet = await s.get(Gauntlet, gauntlet_id)
            if not gauntlet:
                raise NotFoundError("Gauntlet", gauntlet_id)
            if not gauntlet.is_active:
                raise ValidationError(f"Gauntlet {gauntlet_id} is {gauntlet.status.value}")

            lineup = GauntletLineup(
                gauntlet_id=gauntlet_id,
                name=name,
                is_user_lineup=is_user_lineup,
                boat_id=boat_id,
                saved_lineup_id=saved_lineup_id,
                is_active=True
            )
            s.add(lineup)
            await s.flush()
            self.logger.info(
                f"Created {'user' if is_user_lineup else 'challenger'} lineup {lineup.id} in gauntlet {gauntlet_id}"
            )
            return lineup

    async def set_lineup_active(
        self,
        lineup_id: int,
        is_active: bool,
        session: Optional[AsyncSession] = None
    ) -> GauntletLineup:
        """Inactive lineups keep their position but cannot record matches"""
        async with self._get_session_context(session) as s:
            lineup = await s.get(GauntletLineup, lineup_id)
            if not lineup:
                raise NotFoundError("Lineup", lineup_id)
            lineup.is_active = is_active
            await s.flush()
            return lineup
