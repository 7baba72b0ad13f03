from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from tenantgate.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MockUser:
    id: str
    email: str
    full_name: str
    first_name: str
    last_name: str
    user_name: str
    primary_tenant_id: int
    tenant_memberships: List[int] = field(default_factory=list)
    roles: List[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> Dict[str, object]:
        """Mock directory JSON shape (camelCase, as the dev fixtures used it)."""
        return {
            "id": self.id,
            "email": self.email,
            "fullName": self.full_name,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "userName": self.user_name,
            "primaryTenantId": self.primary_tenant_id,
            "tenantMemberships": list(self.tenant_memberships),
            "roles": list(self.roles),
            "authType": "mock",
        }


# (password, user) pairs seeded into every mock directory
DEFAULT_MOCK_ACCOUNTS = (
    (
        "Password123!",
        MockUser(
            id="admin-001",
            email="admin@spearfish.io",
            full_name="Admin User",
            first_name="Admin",
            last_name="User",
            user_name="admin",
            primary_tenant_id=1,
            tenant_memberships=[1, 2, 3],
            roles=["GlobalAdminRole", "TenantAdminRole"],
            description="Admin user with full access",
        ),
    ),
    (
        "UserPass123!",
        MockUser(
            id="user-001",
            email="user@spearfish.io",
            full_name="Test User",
            first_name="Test",
            last_name="User",
            user_name="testuser",
            primary_tenant_id=1,
            tenant_memberships=[1],
            roles=["TenantUserRole"],
            description="Regular user with standard access",
        ),
    ),
    (
        "TestPass123!",
        MockUser(
            id="test-001",
            email="test@example.com",
            full_name="Demo User",
            first_name="Demo",
            last_name="User",
            user_name="demo",
            primary_tenant_id=2,
            tenant_memberships=[2],
            roles=["TenantUserRole"],
            description="Demo user for testing features",
        ),
    ),
)

DEFAULT_MOCK_TENANTS = (
    {"id": 1, "name": "Spearfish", "type": "CustomerProduction", "description": "Primary production tenant"},
    {"id": 2, "name": "Spearfish Sandbox", "type": "CustomerSandbox", "description": "Sandbox for integration testing"},
    {"id": 3, "name": "Sales Demo", "type": "SalesDemo", "description": "Demo data for sales walkthroughs"},
)


class MockDirectory:
    """In-memory user directory backing the ``mock`` auth mode.

    Passwords are held only as argon2id hashes; lookups never touch the
    network.
    """

    def __init__(
        self,
        accounts: Iterable[tuple[str, MockUser]] = DEFAULT_MOCK_ACCOUNTS,
        tenants: Iterable[dict] = DEFAULT_MOCK_TENANTS,
    ) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._users: Dict[str, tuple[str, MockUser]] = {}
        for password, user in accounts:
            self.add_user(user, password)
        self.tenants: Dict[int, dict] = {int(t["id"]): dict(t) for t in tenants}

    def add_user(self, user: MockUser, password: str) -> None:
        self._users[user.email.lower()] = (self._pwd_hasher.hash(password), user)

    def get(self, email: str) -> Optional[MockUser]:
        record = self._users.get((email or "").strip().lower())
        return record[1] if record else None

    def verify(self, email: str, password: str) -> Optional[MockUser]:
        """Return the user when ``password`` matches, else None.

        Unknown emails and wrong passwords are indistinguishable to the caller.
        """
        record = self._users.get((email or "").strip().lower())
        if record is None:
            logger.info("mock_directory_unknown_user")
            return None
        password_hash, user = record
        try:
            self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            logger.info("mock_directory_password_mismatch", user_id=user.id)
            return None
        return user

    def list_users(self) -> List[MockUser]:
        return [user for _, user in self._users.values()]

    def tenants_for(self, memberships: Iterable[int]) -> List[dict]:
        return [self.tenants[tid] for tid in memberships if tid in self.tenants]
