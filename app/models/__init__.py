# LPR Session Reconciliation — Database Models
# Import all models here for SQLAlchemy discovery

from app.models.event import Event                    # noqa
from app.models.parking_session import ParkingSession  # noqa
from app.models.zone_config import ZoneConfig          # noqa
from app.models.upload import Upload                   # noqa
