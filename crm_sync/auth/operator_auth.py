"""
Operator authentication for CRM synchronization.

Provides:
- Operator registration with salted PBKDF2-SHA256 password hashes
- Credential checks that resolve an operator to its owner scope
- Lookup of the CRM access token from the environment
"""

import hashlib
import hmac
import logging
import os
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Optional

from crm_sync.storage.db import SyncDatabase

# Environment variable holding the CRM access token
ACCESS_TOKEN_ENV_VAR = "CRM_SYNC_ACCESS_TOKEN"

# PBKDF2 parameters
HASH_ALGORITHM = "sha256"
HASH_ITERATIONS = 260_000
SALT_BYTES = 16

# Minimum accepted password length on registration
MIN_PASSWORD_LENGTH = 8

logger = logging.getLogger(__name__)


class AuthenticationError(Exception):
    """Raised when authentication fails or credentials are invalid."""

    pass


@dataclass(frozen=True)
class OperatorCredentials:
    """Email and password of an operator."""

    email: str
    password: str

    def __repr__(self) -> str:
        return f"OperatorCredentials(email={self.email!r}, password='***')"


def normalize_email(email: str) -> str:
    """Lowercase and strip an email address for storage and lookup."""
    return email.strip().lower()


def hash_password(password: str, salt: str) -> str:
    """
    Hash a password with PBKDF2-SHA256.

    Args:
        password: Plain-text password
        salt: Hex-encoded salt

    Returns:
        Hex-encoded derived key
    """
    derived = hashlib.pbkdf2_hmac(
        HASH_ALGORITHM,
        password.encode("utf-8"),
        bytes.fromhex(salt),
        HASH_ITERATIONS,
    )
    return derived.hex()


def get_access_token(env_var: str = ACCESS_TOKEN_ENV_VAR) -> Optional[str]:
    """
    Read the CRM access token from the environment.

    Args:
        env_var: Name of the environment variable to read

    Returns:
        The token, or None if the variable is unset or blank
    """
    token = os.environ.get(env_var, "").strip()
    return token or None


class OperatorAuth:
    """
    Operator account manager.

    An operator's id is the owner scope under which its contacts are stored.

    Usage:
        auth = OperatorAuth(database)

        # Create an operator
        owner_id = auth.register('ops@example.com', 'correct horse')

        # Resolve credentials to the owner scope
        owner_id = auth.authenticate(
            OperatorCredentials('ops@example.com', 'correct horse')
        )
    """

    def __init__(self, database: SyncDatabase):
        """
        Initialize the authentication manager.

        Args:
            database: Store holding the operators table
        """
        self.database = database

    def register(self, email: str, password: str) -> str:
        """
        Create a new operator.

        Args:
            email: Operator email (case-insensitive, must be unique)
            password: Plain-text password

        Returns:
            The new operator id

        Raises:
            AuthenticationError: If the email is taken or the input is invalid
        """
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise AuthenticationError(f"Invalid email address: {email!r}")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthenticationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )

        operator_id = str(uuid.uuid4())
        salt = secrets.token_hex(SALT_BYTES)

        try:
            self.database.create_operator(
                operator_id, normalized, hash_password(password, salt), salt
            )
        except sqlite3.IntegrityError as e:
            raise AuthenticationError(
                f"Operator already exists: {normalized}"
            ) from e

        logger.info(f"Registered operator {normalized} ({operator_id})")
        return operator_id

    def authenticate(self, credentials: OperatorCredentials) -> str:
        """
        Check credentials and return the operator's owner scope.

        Args:
            credentials: Email and password

        Returns:
            Operator id

        Raises:
            AuthenticationError: If the email is unknown or the password is wrong
        """
        if not credentials.email or not credentials.password:
            raise AuthenticationError("Email and password are required")

        normalized = normalize_email(credentials.email)
        operator = self.database.get_operator_by_email(normalized)
        if operator is None:
            logger.warning(f"Authentication failed: unknown operator {normalized}")
            raise AuthenticationError("Invalid email or password")

        expected = operator["password_hash"]
        actual = hash_password(credentials.password, operator["salt"])
        if not hmac.compare_digest(expected, actual):
            logger.warning(f"Authentication failed: bad password for {normalized}")
            raise AuthenticationError("Invalid email or password")

        logger.debug(f"Authenticated operator {normalized}")
        operator_id: str = operator["id"]
        return operator_id
