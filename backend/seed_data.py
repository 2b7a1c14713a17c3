import argparse
import sys
from datetime import datetime
from typing import Dict, List

import bcrypt
from dotenv import load_dotenv
from pymongo.errors import PyMongoError

import mongodb

BCRYPT_ROUNDS = 12

seed_categories = [
    {"name": "Electronics", "description": "Electronic devices and gadgets"},
    {"name": "Clothing", "description": "Men and women clothing"},
    {"name": "Books", "description": "Books and educational materials"},
    {"name": "Home & Garden", "description": "Home improvement and garden supplies"},
    {"name": "Sports", "description": "Sports and fitness equipment"},
]

seed_products = [
    {
        "name": "Smartphone",
        "description": "Latest model smartphone with advanced features",
        "price": 699.99,
        "images": ["/uploads/smartphone.jpg"],
        "stockQuantity": 50,
        "isAmazingOffer": False,
        "salesCount": 10,
    },
    {
        "name": "Laptop",
        "description": "High-performance laptop for work and gaming",
        "price": 1299.99,
        "images": ["/uploads/laptop.jpg"],
        "stockQuantity": 30,
        "isAmazingOffer": True,
        "salesCount": 5,
    },
    {
        "name": "T-Shirt",
        "description": "Comfortable cotton t-shirt",
        "price": 19.99,
        "images": ["/uploads/tshirt.jpg"],
        "stockQuantity": 100,
        "isAmazingOffer": False,
        "salesCount": 25,
    },
    {
        "name": "Jeans",
        "description": "Classic blue jeans",
        "price": 49.99,
        "images": ["/uploads/jeans.jpg"],
        "stockQuantity": 75,
        "isAmazingOffer": False,
        "salesCount": 15,
    },
    {
        "name": "Programming Book",
        "description": "Learn web development with this comprehensive guide",
        "price": 39.99,
        "images": ["/uploads/book.jpg"],
        "stockQuantity": 25,
        "isAmazingOffer": False,
        "salesCount": 8,
    },
    {
        "name": "Garden Tools Set",
        "description": "Complete set of garden tools",
        "price": 89.99,
        "images": ["/uploads/garden-tools.jpg"],
        "stockQuantity": 40,
        "isAmazingOffer": True,
        "salesCount": 3,
    },
    {
        "name": "Running Shoes",
        "description": "Professional running shoes for athletes",
        "price": 129.99,
        "images": ["/uploads/running-shoes.jpg"],
        "stockQuantity": 60,
        "isAmazingOffer": False,
        "salesCount": 12,
    },
]

seed_users = [
    {"name": "Admin User", "email": "admin@example.com", "password": "admin12345", "role": "admin"},
    {"name": "John Doe", "email": "john@example.com", "password": "password123", "role": "customer"},
]


def existing_counts(db) -> Dict[str, int]:
    return mongodb.count_collections(db, ("categories", "products", "users"))


def clear_seeded_collections(db):
    for name in ("categories", "products", "users"):
        db[name].delete_many({})


def seed_database(db, force: bool = False, rounds: int = BCRYPT_ROUNDS) -> Dict[str, object]:
    """Insert the sample catalog and accounts.

    Returns a summary with ``seeded`` set to False when the database already
    holds data and ``force`` was not requested.
    """
    counts = existing_counts(db)
    if any(counts.values()) and not force:
        return {"seeded": False, "existing": counts}

    if force:
        clear_seeded_collections(db)

    timestamp = datetime.utcnow()
    category_documents = [
        {**category, "created_at": timestamp, "updated_at": timestamp}
        for category in seed_categories
    ]
    category_ids = db.categories.insert_many(category_documents).inserted_ids

    # Categories are assigned round-robin.
    product_documents: List[Dict] = []
    for index, product in enumerate(seed_products):
        product_documents.append(
            {
                **product,
                "category": category_ids[index % len(category_ids)],
                "created_at": timestamp,
                "updated_at": timestamp,
            }
        )
    product_ids = db.products.insert_many(product_documents).inserted_ids

    user_documents = [
        {
            "name": user["name"],
            "email": user["email"],
            "role": user["role"],
            "password": bcrypt.hashpw(
                user["password"].encode("utf-8"), bcrypt.gensalt(rounds)
            ),
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        for user in seed_users
    ]
    user_ids = db.users.insert_many(user_documents).inserted_ids

    return {
        "seeded": True,
        "categories": len(category_ids),
        "products": len(product_ids),
        "users": len(user_ids),
    }


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed the store database with sample data.")
    parser.add_argument(
        "--force",
        action="store_true",
        help="clear categories, products and users before seeding",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    uri = mongodb.get_connection_string()
    print(f"Connecting to MongoDB at {mongodb.describe_connection_string(uri)}...")

    try:
        client = mongodb.connect(uri)
        db = mongodb.get_database(client)
        if args.force:
            print("FORCE SEEDING - clearing all existing data...")
        result = seed_database(db, force=args.force)
    except PyMongoError as exc:
        print(f"Error seeding database: {exc}")
        return 1

    if not result["seeded"]:
        existing = result["existing"]
        print("Database already contains data. Skipping seeding to prevent data loss.")
        for name, count in existing.items():
            print(f"   {name}: {count}")
        print("To re-seed the database, run: python seed_data.py --force")
        return 0

    print(f"{result['categories']} categories inserted")
    print(f"{result['products']} products inserted")
    print(f"{result['users']} users inserted")
    print("\nDatabase seeding completed successfully!")
    for user in seed_users:
        print(f"{user['role'].title()} login: {user['email']} / {user['password']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
