from premarket_app.models.enums import UserRole

from .errors import ForbiddenError, UnauthorizedError


class CheckRolePermission:
    async def check_authenticated(self, current_user):
        if current_user is None or not current_user.is_active:
            raise UnauthorizedError("Not authenticated")

    async def check_admin(self, current_user):
        await self.check_authenticated(current_user)
        if current_user.role != UserRole.ADMIN:
            raise ForbiddenError("Access Denied.")

    async def check_agent(self, current_user):
        await self.check_authenticated(current_user)
        if current_user.role != UserRole.AGENT:
            raise ForbiddenError("Only agents can perform this action.")

    async def check_renter(self, current_user):
        await self.check_authenticated(current_user)
        if current_user.role != UserRole.RENTER:
            raise ForbiddenError("Only renters can perform this action.")
