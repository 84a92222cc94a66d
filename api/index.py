import logging
import sys

from api.routes import build_services, create_app
from lib.config import get_settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True
)

# Serverless entrypoint
app = create_app(build_services(get_settings()))
