import sys
from datetime import datetime
from typing import Dict

from dotenv import load_dotenv
from pymongo.errors import PyMongoError

import mongodb

DIAGNOSIS_OPTIONS = {
    "maxPoolSize": 5,
    "minPoolSize": 1,
}


def diagnose(client) -> Dict[str, object]:
    db = mongodb.get_database(client)
    server_info = client.server_info()
    return {
        "database": db.name,
        "version": server_info.get("version"),
        "collections": sorted(db.list_collection_names()),
        "ping_ms": mongodb.ping(db),
    }


def main() -> int:
    load_dotenv()
    print("=== Database Connection Diagnosis ===")
    print(f"Current time: {datetime.utcnow().isoformat()}Z")

    uri = mongodb.get_connection_string()
    print(f"MongoDB host and database: {mongodb.describe_connection_string(uri)}")

    options = mongodb.client_options(**DIAGNOSIS_OPTIONS)
    print(f"Attempting connection with options: {options}")

    try:
        with mongodb.connect(uri, **DIAGNOSIS_OPTIONS) as client:
            result = diagnose(client)
    except PyMongoError as exc:
        print(f"Connection failed: {exc}")
        print("\nTroubleshooting steps:")
        print("1. Make sure MongoDB is running")
        print("2. Check DB_CONNECTION_STRING")
        print("3. Verify database credentials and network access on port 27017")
        return 1

    print("Connection successful")
    print(f"Database: {result['database']}")
    print(f"Server version: {result['version']}")
    print(f"Collections: {', '.join(result['collections']) or '(none)'}")
    print(f"Ping round trip: {result['ping_ms']} ms")
    return 0


if __name__ == "__main__":
    sys.exit(main())
