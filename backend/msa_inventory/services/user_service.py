# backend/msa_inventory/services/user_service.py
from typing import Optional, List
from msa_inventory.core.exceptions import NotFound, PermissionDenied, ValidationError
from msa_inventory.models.user_model import User, Permissions
from msa_inventory.schemas.user_schema import UserCreate, UserUpdate
from msa_inventory.storage.base import StorageBackend
from msa_inventory.utils.validation import parse_request
import logging

logger = logging.getLogger(__name__)

class UserService:
    def __init__(self, storage: StorageBackend):
        self.storage = storage

    async def create_user(self, **fields) -> User:
        user_data = parse_request(UserCreate, **fields)
        email = user_data.email.lower()
        if await self.storage.users.find_by_field("email", email):
            raise ValidationError("A user with this email already exists", {"email": email})

        permissions = user_data.permissions or Permissions.for_role(user_data.role)
        user = User(
            name=user_data.name,
            email=email,
            role=user_data.role,
            team=user_data.team,
            permissions=permissions,
        )
        document = await self.storage.users.create(user.to_document())
        logger.info(f"Created user {email} with role {user_data.role.value}")
        return User.from_document(document)

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        return User.from_document(await self.storage.users.find_by_id(user_id))

    async def get_user_by_email(self, email: str) -> Optional[User]:
        return User.from_document(await self.storage.users.find_by_field("email", email.lower()))

    async def require_user(self, user_id: str) -> User:
        user = await self.get_user_by_id(user_id)
        if not user:
            raise NotFound("User", user_id)
        return user

    async def require_permission(self, user_id: str, permission: str) -> User:
        """Load an actor and make sure they are active and hold ``permission``"""
        user = await self.require_user(user_id)
        if not user.is_active or not getattr(user.permissions, permission, False):
            raise PermissionDenied(
                f"User {user.name} is not allowed to perform this action ({permission})",
                {"user_id": user_id, "permission": permission},
            )
        return user

    async def get_all_users(self, role: Optional[str] = None, team: Optional[str] = None,
                            search: Optional[str] = None) -> List[User]:
        documents = await self.storage.users.find_all({"role": role, "team": team, "search": search})
        return [User.from_document(d) for d in documents]

    async def get_approvers(self) -> List[User]:
        return [u for u in await self.get_all_users() if u.can_approve]

    async def update_user(self, user_id: str, **fields) -> Optional[User]:
        user_data = parse_request(UserUpdate, **fields)
        update_data = user_data.model_dump(exclude_unset=True)
        # A role change resets permissions unless they were given explicitly
        if "role" in update_data and "permissions" not in update_data:
            update_data["permissions"] = Permissions.for_role(user_data.role).model_dump()
        if not update_data:
            return await self.get_user_by_id(user_id)
        return User.from_document(await self.storage.users.update(user_id, update_data))

    async def delete_user(self, user_id: str) -> bool:
        return await self.storage.users.delete(user_id)
