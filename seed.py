"""Idempotent seed data: one admin account and the system-seeded catalog."""

import os

import structlog
from pymongo.database import Database

from database import create_document
from money import to_cents
from schemas import Product, User
from security import hash_password

logger = structlog.get_logger(__name__)

SAMPLE_PRODUCTS = [
    {"name": "Tokino Sora Plush", "price": "19.99", "category": "Plush", "image": "https://i.imgur.com/8JZlC3C.png", "vtuber_tag": "Tokino Sora"},
    {"name": "Roboco Keychain", "price": "7.50", "category": "Keychain", "image": "https://i.imgur.com/TZKMm1G.png", "vtuber_tag": "Roboco"},
    {"name": "Sakura Miko Poster", "price": "12.00", "category": "Poster", "image": "https://i.imgur.com/3b9K2Bk.png", "vtuber_tag": "Sakura Miko"},
    {"name": "Hoshimachi Suisei T-shirt", "price": "22.50", "category": "Apparel", "image": "https://i.imgur.com/wt0fN4q.png", "vtuber_tag": "Hoshimachi Suisei"},
    {"name": "Shirakami Fubuki Sticker Pack", "price": "5.00", "category": "Sticker", "image": "https://i.imgur.com/ZK0ZlqF.png", "vtuber_tag": "Shirakami Fubuki"},
    {"name": "Natsuiro Matsuri Plush", "price": "18.00", "category": "Plush", "image": "https://i.imgur.com/Ui2rklF.png", "vtuber_tag": "Natsuiro Matsuri"},
    {"name": "Usada Pekora Mug", "price": "10.00", "category": "Merch", "image": "https://i.imgur.com/Up4yB5Q.png", "vtuber_tag": "Usada Pekora"},
    {"name": "Shiranui Flare Hoodie", "price": "35.00", "category": "Apparel", "image": "https://i.imgur.com/PZkABqf.png", "vtuber_tag": "Shiranui Flare"},
]


def seed_data(db: Database) -> None:
    # Create admin if not exists
    admin_email = os.getenv("ADMIN_EMAIL", "admin@holohaven.com")
    if not db["user"].find_one({"email": admin_email}):
        admin = User(
            email=admin_email,
            username="admin",
            password_hash=hash_password(os.getenv("ADMIN_PASSWORD", "admin123")),
            is_admin=True,
        )
        create_document(db, "user", admin)
        logger.info("Seeded admin account", email=admin_email)

    # Seed products if collection is empty; uploaded_by=None marks them as system-seeded
    if db["product"].count_documents({}) == 0:
        for p in SAMPLE_PRODUCTS:
            product = Product(
                name=p["name"],
                price_cents=to_cents(p["price"]),
                category=p["category"],
                description=f"High quality {p['category']} merchandise featuring your favorite VTubers!",
                vtuber_tag=p["vtuber_tag"],
                image=p["image"],
                images=[p["image"]],
            )
            create_document(db, "product", product)
        logger.info("Seeded products", count=len(SAMPLE_PRODUCTS))
