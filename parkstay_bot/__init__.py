"""
ParkStay Bot

Automation core for the WA ParkStay campsite booking portal:

1. Watches
   - Poll a campground for a date range on an interval
   - Notify when a matching site opens up, or book it automatically

2. Skip The Queue (Beat the Crowd)
   - Grow an existing booking as the 180-day booking window moves forward
   - Creates the longer booking before cancelling the old one

Both run on one asyncio scheduler behind the portal's virtual waiting room.
"""
from .common.config import Config, load_config

__version__ = "1.0.0"

__all__ = [
    "Config",
    "load_config",
]
