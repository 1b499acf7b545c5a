"""
MongoDB connection

Used only when STORAGE_BACKEND=mongo. `db` stays None when DATABASE_URL or
DATABASE_NAME is missing, so the app imports fine without a database.
"""
import os

from pymongo import MongoClient

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = client[DATABASE_NAME]
