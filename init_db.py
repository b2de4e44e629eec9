"""
Database initialization script
Run this to create the CRM tables
"""
from app.database import engine, Base
from app import models  # noqa: F401  registers the tables on Base.metadata

def init_database():
    """Create all tables that do not exist yet"""
    Base.metadata.create_all(bind=engine)
    tables = ", ".join(sorted(Base.metadata.tables))
    print(f"Database initialized successfully! Tables: {tables}")

if __name__ == "__main__":
    init_database()
