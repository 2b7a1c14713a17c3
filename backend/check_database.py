import argparse
import sys
from datetime import datetime
from typing import Dict, List

from dotenv import load_dotenv
from pymongo.errors import PyMongoError

import mongodb

SAMPLE_LIMIT = 3


def collection_report(db) -> Dict[str, int]:
    return {name: db[name].count_documents({}) for name in sorted(db.list_collection_names())}


def missing_collections(db) -> List[str]:
    present = set(db.list_collection_names())
    return [name for name in mongodb.EXPECTED_COLLECTIONS if name not in present]


def sample_documents(db, name: str, limit: int = SAMPLE_LIMIT) -> List[str]:
    samples = []
    for document in db[name].find().limit(limit):
        label = document.get("name") or document.get("email") or "No name field"
        samples.append(f"{document.get('_id')} - {label}")
    return samples


def check_persistence(db) -> bool:
    """Insert, read back and delete a throwaway category."""
    test_document = {
        "name": f"Persistence check {datetime.utcnow().isoformat()}",
        "description": "Temporary category for testing data persistence",
        "created_at": datetime.utcnow(),
    }
    inserted_id = db.categories.insert_one(test_document).inserted_id
    try:
        return db.categories.find_one({"_id": inserted_id}) is not None
    finally:
        db.categories.delete_one({"_id": inserted_id})


def print_report(db, persistence: bool = False) -> int:
    report = collection_report(db)

    print("\nCollections in database:")
    if not report:
        print("  (No collections found - database is empty)")
    for name, count in report.items():
        print(f"  {name}: {count} documents")
        for sample in sample_documents(db, name) if count else []:
            print(f"    - {sample}")

    print("\nChecking expected collections:")
    missing = missing_collections(db)
    for name in mongodb.EXPECTED_COLLECTIONS:
        status = "missing" if name in missing else f"{report.get(name, 0)} documents"
        print(f"  {name}: {status}")

    if persistence:
        print("\nTesting document insertion...")
        if not check_persistence(db):
            print("Could not retrieve the test document")
            return 1
        print("Test document written, retrieved and cleaned up")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Report on the contents of the store database.")
    parser.add_argument(
        "--persistence",
        action="store_true",
        help="also write, read back and delete a test document",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    uri = mongodb.get_connection_string()
    print("Checking database content...")
    print(f"Host and database: {mongodb.describe_connection_string(uri)}")

    try:
        with mongodb.connect(uri, serverSelectionTimeoutMS=5000, socketTimeoutMS=10000) as client:
            exit_code = print_report(mongodb.get_database(client), args.persistence)
    except PyMongoError as exc:
        print(f"MongoDB error: {exc}")
        return 1

    if exit_code:
        return exit_code
    print("\nDatabase check completed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
