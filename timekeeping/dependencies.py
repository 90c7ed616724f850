from __future__ import annotations

from fastapi import Depends
from sqlalchemy.orm import Session

from timekeeping.db import get_db
from timekeeping.services.attendance import AttendanceUnitsSource
from timekeeping.services.leave import SessionUnitsSource


def get_units_source(db: Session = Depends(get_db)) -> SessionUnitsSource:
    return AttendanceUnitsSource(db)
