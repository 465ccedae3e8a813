"""
Status store.
Sole owner of each vehicle's current status, version and status_since.
Rows are only changed through compare_and_set, driven by the transition validator.
"""
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ..exceptions import VehicleNotFound
from ..models.models import Vehicle, VehicleStatusRecord
from ..schemas.tracking import VehicleStatus


class StatusStore:
    def find(self, db: Session, vehicle_id: uuid.UUID) -> Optional[VehicleStatusRecord]:
        return db.query(VehicleStatusRecord).filter(VehicleStatusRecord.vehicle_id == vehicle_id).first()

    def get(self, db: Session, vehicle_id: uuid.UUID) -> VehicleStatusRecord:
        record = self.find(db, vehicle_id)
        if record is None:
            raise VehicleNotFound(vehicle_id)
        return record

    def create(
        self,
        db: Session,
        vehicle_id: uuid.UUID,
        occurred_at: datetime,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
    ) -> VehicleStatusRecord:
        record = VehicleStatusRecord(
            vehicle_id=vehicle_id,
            current_status=VehicleStatus.AVAILABLE.value,
            status_since=occurred_at,
            version=0,
            updated_by_id=actor_id,
            updated_by_role=actor_role,
            created_at=occurred_at,
        )
        db.add(record)
        db.flush()
        return record

    def compare_and_set(
        self,
        db: Session,
        vehicle_id: uuid.UUID,
        expected_version: int,
        new_status: VehicleStatus,
        occurred_at: datetime,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
        location: Optional[str] = None,
        mileage: Optional[int] = None,
    ) -> bool:
        """
        Move the record to ``new_status`` only if it is still at ``expected_version``.

        Returns:
            True if exactly this caller won the update
        """
        values = {
            "current_status": new_status.value,
            "status_since": occurred_at,
            "version": VehicleStatusRecord.version + 1,
            "updated_by_id": actor_id,
            "updated_by_role": actor_role,
        }
        if location is not None:
            values["current_location"] = location
        if mileage is not None:
            values["current_mileage"] = mileage
        result = db.execute(
            update(VehicleStatusRecord)
            .where(
                VehicleStatusRecord.vehicle_id == vehicle_id,
                VehicleStatusRecord.version == expected_version,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def list_all(self, db: Session) -> List[Tuple[VehicleStatusRecord, Vehicle]]:
        return (
            db.query(VehicleStatusRecord, Vehicle)
            .join(Vehicle, Vehicle.id == VehicleStatusRecord.vehicle_id)
            .order_by(Vehicle.registration_number.asc())
            .all()
        )

    def list_by_status(self, db: Session, status: VehicleStatus) -> List[Tuple[VehicleStatusRecord, Vehicle]]:
        return (
            db.query(VehicleStatusRecord, Vehicle)
            .join(Vehicle, Vehicle.id == VehicleStatusRecord.vehicle_id)
            .filter(VehicleStatusRecord.current_status == status.value)
            .order_by(Vehicle.registration_number.asc())
            .all()
        )

    def counts_by_status(self, db: Session) -> Dict[VehicleStatus, int]:
        counts = {status: 0 for status in VehicleStatus}
        rows = (
            db.query(VehicleStatusRecord.current_status, func.count(VehicleStatusRecord.vehicle_id))
            .group_by(VehicleStatusRecord.current_status)
            .all()
        )
        for status, count in rows:
            counts[VehicleStatus(status)] = count
        return counts
