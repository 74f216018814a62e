"""Voice-server, bot-node and admin credential storage."""

from abc import ABC, abstractmethod
from typing import Optional

from control_plane.domain.models import (
    AdminUser,
    VirtualServer,
    VoiceInstance,
    VoiceNode,
    VoiceToken,
)
from control_plane.domain.types import InstallStatus, VoiceProduct, VoiceStatus


class VoiceStore(ABC):
    @abstractmethod
    async def get_node(self, product: VoiceProduct, node_id: int) -> Optional[VoiceNode]:
        ...

    @abstractmethod
    async def save_node(self, node: VoiceNode) -> None:
        ...

    @abstractmethod
    async def get_instance(
        self, product: VoiceProduct, instance_id: int
    ) -> Optional[VoiceInstance]:
        ...

    @abstractmethod
    async def save_instance(self, instance: VoiceInstance) -> None:
        ...

    @abstractmethod
    async def get_virtual_server(
        self, product: VoiceProduct, server_id: int
    ) -> Optional[VirtualServer]:
        ...

    @abstractmethod
    async def save_virtual_server(self, server: VirtualServer) -> None:
        ...

    @abstractmethod
    async def get_active_token(self, virtual_server_id: int) -> Optional[VoiceToken]:
        ...

    @abstractmethod
    async def rotate_token(self, new_token: VoiceToken) -> VoiceToken:
        """Deactivate the server's active token and activate new_token atomically."""


class UserStore(ABC):
    @abstractmethod
    async def get(self, user_id: int) -> Optional[AdminUser]:
        ...

    @abstractmethod
    async def save(self, user: AdminUser) -> None:
        ...


class VoiceRepository(VoiceStore):
    def __init__(self, pool):
        self._pool = pool

    async def get_node(self, product: VoiceProduct, node_id: int) -> Optional[VoiceNode]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM voice_nodes WHERE id = $1 AND product = $2",
                node_id,
                product.value,
            )
        if not row:
            return None
        return VoiceNode(
            id=row["id"],
            product=VoiceProduct(row["product"]),
            agent_id=row["agent_id"],
            install_status=InstallStatus(row["install_status"]),
            installed_version=row["installed_version"],
            running=row["running"],
            last_error=row["last_error"],
            client_installed=row["client_installed"],
            client_version=row["client_version"],
            client_path=row["client_path"],
        )

    async def save_node(self, node: VoiceNode) -> None:
        query = """
            UPDATE voice_nodes SET
                install_status = $2,
                installed_version = $3,
                running = $4,
                last_error = $5,
                client_installed = $6,
                client_version = $7,
                client_path = $8
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                node.id,
                node.install_status.value,
                node.installed_version,
                node.running,
                node.last_error,
                node.client_installed,
                node.client_version,
                node.client_path,
            )

    async def get_instance(
        self, product: VoiceProduct, instance_id: int
    ) -> Optional[VoiceInstance]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM voice_instances WHERE id = $1 AND product = $2",
                instance_id,
                product.value,
            )
        if not row:
            return None
        return VoiceInstance(
            id=row["id"],
            product=VoiceProduct(row["product"]),
            status=VoiceStatus(row["status"]),
        )

    async def save_instance(self, instance: VoiceInstance) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE voice_instances SET status = $2 WHERE id = $1",
                instance.id,
                instance.status.value,
            )

    async def get_virtual_server(
        self, product: VoiceProduct, server_id: int
    ) -> Optional[VirtualServer]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM virtual_servers WHERE id = $1 AND product = $2",
                server_id,
                product.value,
            )
        if not row:
            return None
        return VirtualServer(
            id=row["id"],
            product=VoiceProduct(row["product"]),
            status=VoiceStatus(row["status"]),
            sid=row["sid"],
            voice_port=row["voice_port"],
            filetransfer_port=row["filetransfer_port"],
        )

    async def save_virtual_server(self, server: VirtualServer) -> None:
        query = """
            UPDATE virtual_servers SET
                status = $2,
                sid = $3,
                voice_port = $4,
                filetransfer_port = $5
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            await conn.execute(
                query,
                server.id,
                server.status.value,
                server.sid,
                server.voice_port,
                server.filetransfer_port,
            )

    async def get_active_token(self, virtual_server_id: int) -> Optional[VoiceToken]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM voice_tokens WHERE virtual_server_id = $1 AND active",
                virtual_server_id,
            )
        return self._row_to_token(row) if row else None

    async def rotate_token(self, new_token: VoiceToken) -> VoiceToken:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE voice_tokens SET active = FALSE, deactivated_at = $2
                    WHERE virtual_server_id = $1 AND active
                    """,
                    new_token.virtual_server_id,
                    new_token.created_at,
                )
                row = await conn.fetchrow(
                    """
                    INSERT INTO voice_tokens (virtual_server_id, product, token, role,
                                              active, created_at)
                    VALUES ($1, $2, $3, $4, TRUE, $5)
                    RETURNING *
                    """,
                    new_token.virtual_server_id,
                    new_token.product.value,
                    new_token.token,
                    new_token.role,
                    new_token.created_at,
                )
        return self._row_to_token(row)

    def _row_to_token(self, row) -> VoiceToken:
        return VoiceToken(
            id=row["id"],
            virtual_server_id=row["virtual_server_id"],
            product=VoiceProduct(row["product"]),
            token=row["token"],
            role=row["role"],
            active=row["active"],
            created_at=row["created_at"],
            deactivated_at=row["deactivated_at"],
        )


class UserRepository(UserStore):
    def __init__(self, pool):
        self._pool = pool

    async def get(self, user_id: int) -> Optional[AdminUser]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM admin_users WHERE id = $1", user_id)
        if not row:
            return None
        return AdminUser(
            id=row["id"],
            ssh_public_key=row["ssh_public_key"],
            ssh_public_key_pending=row["ssh_public_key_pending"],
        )

    async def save(self, user: AdminUser) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE admin_users SET
                    ssh_public_key = $2,
                    ssh_public_key_pending = $3
                WHERE id = $1
                """,
                user.id,
                user.ssh_public_key,
                user.ssh_public_key_pending,
            )
