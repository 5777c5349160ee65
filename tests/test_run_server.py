"""Tests for run_server.py helpers."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from run_server import queue_db_path


def test_queue_db_beside_listing_db():
    assert queue_db_path("/var/lib/rentchain/listings.db") == "/var/lib/rentchain/listings_tx.db"


def test_queue_db_only_rewrites_the_file_name():
    assert queue_db_path("/srv/app.db.d/listings.db") == "/srv/app.db.d/listings_tx.db"


def test_queue_db_without_extension():
    assert queue_db_path("data/listings") == "data/listings_tx.db"


def test_queue_db_in_memory():
    assert queue_db_path(":memory:") == ":memory:"
