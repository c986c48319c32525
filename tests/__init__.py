"""Test configuration and fixtures"""
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["ADMIN_API_KEY"] = "test-admin-key-0123456789abcdefghijklmnop"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ADMIN_LOGIN_FAILURE_DELAY"] = "0"
os.environ["ADMIN_LOGIN_RATE_LIMIT"] = "1000/minute"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["LOG_LEVEL"] = "WARNING"
