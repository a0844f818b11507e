import logging

from api.routes import create_app

logger = logging.getLogger(__name__)

# This is for local development
if __name__ == "__main__":
    logger.info("Starting Flask server...")
    create_app().run(debug=True, port=8000)
