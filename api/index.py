from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from monetization.api import create_app
from monetization.config import Settings, configure_logging
from monetization.service import MonetizationService

settings = Settings.from_env()
configure_logging(settings.log_level)

app = create_app(MonetizationService.from_settings(settings), root_path="/api")

handler = Mangum(app)
