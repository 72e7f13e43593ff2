from loguru import logger
from nearhelp.core.db import engine, Base

# Import all models so SQLAlchemy registers them
from nearhelp.models.position import Position
from nearhelp.models.help_request import HelpRequest
from nearhelp.models.message import Message
from nearhelp.models.profile import Profile

def init_db():
    logger.info("Creating database tables")
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
