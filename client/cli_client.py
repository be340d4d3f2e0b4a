#!/usr/bin/env python3
"""
CLI Client for the End-to-End Encrypted Mailbox

Provides a command-line interface for:
- Identity registration and login
- Sending messages sealed with the recipient's public key
- Background polling and local decryption of received messages
- Local encrypted storage of the private key and message list
"""

import asyncio
import sys
import getpass
import logging
from datetime import datetime
from typing import List, Optional
import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from crypto.primitives import CryptoError
from client.api import DeliveryClient, DeliveryError, Session
from client.config import ClientSettings
from client.storage import EncryptedStorage
from client.sync import ClientSync, ReceivedMessage


HELP_TEXT = """Commands:
  /send <code> <message> - Send an encrypted message
  /inbox [n] - Show the n newest messages (default 20)
  /refresh - Poll for new messages now
  /history - Reload the full history from the server
  /whoami - Show your code
  /quit - Quit application"""


def format_message(message: ReceivedMessage) -> str:
    timestamp = datetime.fromtimestamp(message.timestamp / 1000).strftime("%H:%M")
    return f"[{timestamp}] {message.sender}: {message.text}"


class ChatClient:
    """
    End-to-end encrypted mailbox client.
    """

    def __init__(self, settings: Optional[ClientSettings] = None):
        """
        Initialize chat client.

        Args:
            settings: Server URL, poll interval and storage location
        """
        self.settings = settings or ClientSettings()
        self.api = DeliveryClient(self.settings.server_url, timeout=self.settings.request_timeout)
        self.session: Optional[Session] = None
        self.storage: Optional[EncryptedStorage] = None
        self.sync: Optional[ClientSync] = None
        self.running = False

    async def register(self, email: str, phone: str, password: str) -> bool:
        """
        Register a new identity and keep its private key locally.

        Returns:
            True if successful
        """
        try:
            data = await self.api.register(email, phone, password)
        except DeliveryError as e:
            print(f"Registration failed: {e.detail}")
            return False
        except httpx.HTTPError as e:
            print(f"Registration error: {e}")
            return False

        code = data["code"]
        storage = EncryptedStorage(code, self.settings.storage_dir)
        if not storage.unlock(password):
            print("Failed to unlock local storage")
            return False

        storage.save_keys("identity", {
            "code": code,
            "public": data["publicKey"],
            "private": data["privateKey"],
        })
        storage.close()

        print(f"Registration successful! Your code is {code}")
        print("Share this code with people who should be able to message you.")
        return True

    async def login(self, code: str, password: str) -> bool:
        """
        Login with an existing identity.

        Returns:
            True if successful
        """
        try:
            self.session = await self.api.login(code, password)
        except DeliveryError as e:
            print(f"Login failed: {e.detail}")
            return False
        except httpx.HTTPError as e:
            print(f"Login error: {e}")
            return False

        self.storage = EncryptedStorage(code, self.settings.storage_dir)
        if not self.storage.unlock(password):
            print("Failed to unlock local storage with this password")
            return False

        identity = self.storage.load_keys("identity")
        private_key = identity["private"] if identity else self.session.private_key
        if not private_key:
            print("No private key for this identity on this device; messages cannot be decrypted")
            return False

        if not identity:
            self.storage.save_keys("identity", {
                "code": code,
                "public": self.session.public_key,
                "private": private_key,
            })

        try:
            self.sync = ClientSync(
                self.api,
                private_key,
                poll_interval=self.settings.poll_interval,
                storage=self.storage,
                on_messages=self._print_new_messages
            )
        except CryptoError as e:
            print(f"Stored private key is unusable: {e}")
            return False

        print(f"Login successful! Welcome back, {code}")
        return True

    def _print_new_messages(self, batch: List[ReceivedMessage]):
        for message in batch:
            print(f"\n[New message] {format_message(message)}")

    async def send_message(self, recipient: str, message: str):
        """
        Send an encrypted message.

        Args:
            recipient: Recipient code
            message: Message to send
        """
        try:
            await self.api.send_message(recipient, message)
            print(f"Sent to {recipient}")
            await self.sync.sync_now()
        except DeliveryError as e:
            print(f"Failed to send message: {e.detail}")
        except (httpx.HTTPError, CryptoError) as e:
            print(f"Failed to send message: {e}")

    def show_inbox(self, limit: int = 20):
        """Print the newest messages"""
        messages = self.sync.messages[:limit]
        if not messages:
            print("No messages yet.")
            return
        for message in messages:
            print(format_message(message))

    async def run_interactive(self):
        """Run interactive session"""
        self.running = True
        session = PromptSession()

        await self.sync.start()
        print(f"\nYou have {len(self.sync.messages)} message(s).")
        print(HELP_TEXT)
        print()

        try:
            while self.running:
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(f"[{self.session.code}] > ")

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    else:
                        print("Use /send <code> <message> to send a message.")

                except KeyboardInterrupt:
                    break
                except EOFError:
                    break

        finally:
            self.running = False
            await self.sync.stop()
            await self.api.aclose()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split(maxsplit=2)
        cmd = parts[0].lower()

        if cmd == "/send" and len(parts) == 3:
            await self.send_message(parts[1], parts[2])
        elif cmd == "/inbox":
            limit = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 20
            self.show_inbox(limit)
        elif cmd == "/refresh":
            if not await self.sync.sync_now():
                print("Sync skipped or failed, will retry")
        elif cmd == "/history":
            await self.sync.stop()
            self.sync.reload_history()
            await self.sync.start()
            print(f"Reloaded {len(self.sync.messages)} message(s).")
        elif cmd == "/whoami":
            print(self.session.code)
        elif cmd == "/quit":
            self.running = False
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    client = ChatClient()

    print("=" * 50)
    print("End-to-End Encrypted Mailbox Client")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            email = input("Email: ").strip()
            phone = input("Phone: ").strip()
            password = getpass.getpass("Password: ")
            await client.register(email, phone, password)
        elif choice == "2":
            code = input("Code: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(code, password):
                break
        elif choice == "3":
            await client.api.aclose()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()
    print("\nGoodbye!")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
