# init_db.py
import os

from dotenv import load_dotenv

from livewall.store import get_db_connection

load_dotenv()

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'schema.sql')


def init():
    print("Creating tables in the database...")
    conn = get_db_connection(os.environ.get("DATABASE_URL"))
    if conn is None:
        raise SystemExit("Database connection failed")
    try:
        with open(SCHEMA_PATH, 'r') as f:
            schema = f.read()
        with conn.cursor() as cursor:
            cursor.execute(schema)
        conn.commit()
    finally:
        conn.close()
    print("Tables created!")


if __name__ == "__main__":
    init()
