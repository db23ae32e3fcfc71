import os

# Set the TESTING environment variable before any tests are collected/run
# so dispatch.db.database binds to an in-memory SQLite engine.
os.environ["TESTING"] = "True"
