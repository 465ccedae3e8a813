"""
Read access to vehicle summaries owned by the fleet module.
"""
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..exceptions import VehicleNotFound
from ..models.models import Vehicle, VehicleStatusRecord
from ..schemas.tracking import VehicleStatus


class FleetDirectory:
    def get(self, db: Session, vehicle_id: uuid.UUID) -> Vehicle:
        vehicle = db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
        if vehicle is None:
            raise VehicleNotFound(vehicle_id)
        return vehicle

    def unregistered(self, db: Session) -> List[Vehicle]:
        """Active vehicles that have no status record yet."""
        return (
            db.query(Vehicle)
            .outerjoin(VehicleStatusRecord, VehicleStatusRecord.vehicle_id == Vehicle.id)
            .filter(VehicleStatusRecord.vehicle_id.is_(None), Vehicle.is_active.is_(True))
            .order_by(Vehicle.registration_number.asc())
            .all()
        )

    def search(
        self,
        db: Session,
        text: str = "",
        status: Optional[VehicleStatus] = None,
        limit: int = 100,
    ) -> List[Tuple[Vehicle, Optional[VehicleStatusRecord]]]:
        query = db.query(Vehicle, VehicleStatusRecord).outerjoin(
            VehicleStatusRecord, VehicleStatusRecord.vehicle_id == Vehicle.id
        )
        text = (text or "").strip()
        if text:
            like = f"%{text}%"
            query = query.filter(
                or_(
                    Vehicle.registration_number.ilike(like),
                    Vehicle.make.ilike(like),
                    Vehicle.model.ilike(like),
                )
            )
        if status is not None:
            query = query.filter(VehicleStatusRecord.current_status == status.value)
        return query.order_by(Vehicle.registration_number.asc()).limit(limit).all()
