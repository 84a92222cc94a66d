import logging
import sys

from api.routes import build_services, create_app
from lib.config import get_settings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)
logger = logging.getLogger(__name__)

app = create_app(build_services(get_settings()))

if __name__ == "__main__":
    logger.info("Starting Flask server...")
    app.run(debug=True, port=8000)
