"""
HTTP client for the mailbox server.

Thin wrapper over httpx that maps the JSON wire contract to Python values
and error statuses to exceptions.
"""

from dataclasses import dataclass
from typing import List, Optional

import httpx

from crypto.envelope import SealedMessage, seal


class DeliveryError(Exception):
    """Server rejected a request"""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"{status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class NotFoundError(DeliveryError):
    """Unknown recipient or identifier"""
    pass


class AuthError(DeliveryError):
    """Missing, invalid or expired token, or bad credentials"""
    pass


@dataclass(frozen=True)
class Envelope:
    """An encrypted message as returned by the server"""
    sender: str
    encrypted_message: str
    encrypted_aes_key: str
    timestamp: int

    @classmethod
    def from_dict(cls, data: dict) -> "Envelope":
        return cls(
            sender=data.get("from", ""),
            encrypted_message=data.get("encryptedMessage", ""),
            encrypted_aes_key=data.get("encryptedAESKey", ""),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass
class Session:
    """Logged-in identity"""
    code: str
    token: str
    public_key: str
    private_key: Optional[str] = None


def _raise_for_status(response: httpx.Response):
    if response.is_success:
        return
    try:
        detail = response.json().get("detail", response.reason_phrase)
    except ValueError:
        detail = response.reason_phrase

    if response.status_code == 404:
        raise NotFoundError(response.status_code, detail)
    if response.status_code in (401, 403):
        raise AuthError(response.status_code, detail)
    raise DeliveryError(response.status_code, detail)


class DeliveryClient:
    """
    Client for the mailbox HTTP API.

    Args:
        server_url: Base URL of the server
        http_client: Optional preconfigured httpx.AsyncClient
        timeout: Request timeout in seconds
    """

    def __init__(self, server_url: str = "http://localhost:5000",
                 http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self.server_url = server_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(base_url=self.server_url, timeout=timeout)
        self.token: Optional[str] = None

    def _auth_headers(self) -> dict:
        if not self.token:
            raise AuthError(401, "Not logged in")
        return {"Authorization": f"Bearer {self.token}"}

    async def register(self, email: str, phone: str, password: str) -> dict:
        """
        Register a new identity.

        Returns:
            Response body with code, publicKey and privateKey
        """
        response = await self.http_client.post(
            "/register", json={"email": email, "phone": phone, "password": password}
        )
        _raise_for_status(response)
        return response.json()

    async def login(self, code: str, password: str) -> Session:
        """Log in and keep the token for later requests"""
        response = await self.http_client.post("/login", json={"code": code, "password": password})
        _raise_for_status(response)

        data = response.json()
        user = data["user"]
        self.token = data["token"]
        return Session(
            code=user["code"],
            token=self.token,
            public_key=user["publicKey"],
            private_key=user.get("privateKey"),
        )

    async def lookup_public_key(self, code: str) -> str:
        """Get the PEM public key for an identity"""
        response = await self.http_client.get(f"/public-key/{code}")
        _raise_for_status(response)
        return response.json()["publicKey"]

    async def submit(self, recipient: str, sealed: SealedMessage):
        """Post an already sealed message"""
        response = await self.http_client.post(
            "/send-message",
            json={"to": recipient, **sealed.to_dict()},
            headers=self._auth_headers()
        )
        _raise_for_status(response)

    async def send_message(self, recipient: str, message: str):
        """
        Encrypt a message for a recipient and send it.

        Args:
            recipient: Recipient code
            message: Plaintext message
        """
        public_key = await self.lookup_public_key(recipient)
        await self.submit(recipient, seal(message.encode("utf-8"), public_key))

    async def fetch_pending(self) -> List[Envelope]:
        """Drain our pending queue on the server"""
        response = await self.http_client.get("/fetch-messages", headers=self._auth_headers())
        _raise_for_status(response)
        return [Envelope.from_dict(m) for m in response.json().get("messages", [])]

    async def fetch_history(self) -> List[Envelope]:
        """Get every message ever sent to us"""
        response = await self.http_client.get("/message-history", headers=self._auth_headers())
        _raise_for_status(response)
        return [Envelope.from_dict(m) for m in response.json().get("messages", [])]

    async def aclose(self):
        await self.http_client.aclose()
