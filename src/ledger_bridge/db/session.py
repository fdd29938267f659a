from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def create_session_factory(database_url: str, create_tables: bool = True) -> sessionmaker:
    """Engine and session factory for the mirror store"""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # The monitor's callbacks run outside the request thread
        connect_args["check_same_thread"] = False
    engine = create_engine(database_url, connect_args=connect_args)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(autoflush=False, bind=engine)
