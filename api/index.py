from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from gateway.settings import Settings, configure_logging
from ledger.api import create_app

settings = Settings.from_env()
configure_logging(settings.log_level)

app = create_app(settings)
app.root_path = "/api"

handler = Mangum(app)
