#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Chat

Provides a command-line interface for:
- Logging in and bootstrapping transport and directory credentials
- Publishing the local identity key
- Encrypted, signed messaging with verification status on every message
"""

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from common.errors import E2EError, EncryptionFailed, SendFailed
from crypto.keystore import KeyStore
from client.api import ServerAPI
from client.orchestrator import ClientConfig, ReceivedMessage, SessionOrchestrator, SessionState
from client.storage import EncryptedStorage
from client.transport import WebSocketTransport

HELP = """Commands:
  /chat <user> [user ...] - Open a channel (several users make a group)
  /users - List known users
  /whoami - Show identity and key fingerprint
  /rotate - Rotate identity key
  /reconnect - Re-run bootstrap after a failure
  /quit - Quit application"""


class ChatClient:
    """
    Interactive front end over a SessionOrchestrator.
    """

    def __init__(self, config: ClientConfig, storage: Optional[EncryptedStorage] = None):
        """
        Initialize chat client.

        Args:
            config: Client configuration
            storage: Unlocked key storage, or None to keep keys in memory only
        """
        self.config = config
        self.storage = storage
        self.api = ServerAPI(config.server_url, timeout=config.request_timeout)
        self.orchestrator = SessionOrchestrator(
            self.api,
            WebSocketTransport.for_server(config.server_url, open_timeout=config.request_timeout),
            keystore=KeyStore(storage),
            config=config,
        )
        self.orchestrator.add_listener(self.show_message)
        self.running = False

    def show_message(self, message: ReceivedMessage):
        """Print an incoming message with its verification status"""
        timestamp = message.created_at.strftime("%H:%M") if message.created_at else "--:--"
        sender = message.sender_id or "?"
        if message.verified:
            print(f"\n[{timestamp}] {sender}: {message.text}")
        else:
            print(f"\n[{timestamp}] {sender}: <{message.notice}>")

    async def start(self, username: str, password: Optional[str]) -> bool:
        """Log in and bootstrap; True once the identity is published"""
        try:
            await self.orchestrator.start(lambda: self.api.authenticate(username, password))
        except E2EError as e:
            print(f"Login failed ({e.code}): {e.message}")
            return False
        identity = self.orchestrator.identity
        print(f"Logged in as {username}, key fingerprint {identity.fingerprint}")
        return True

    async def send(self, text: str):
        try:
            await self.orchestrator.send_message(text)
        except EncryptionFailed as e:
            print(f"[Not sent: could not encrypt for recipient ({e.message})]")
        except SendFailed as e:
            print(f"[Not sent: relay problem ({e.message})]")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        session = PromptSession()
        print(HELP)

        try:
            while self.running:
                channel = self.orchestrator.channel
                prompt_text = f"[{', '.join(channel.members)}] > " if channel else "> "
                try:
                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)
                except (KeyboardInterrupt, EOFError):
                    break

                if not user_input:
                    continue
                if user_input.startswith("/"):
                    await self._handle_command(user_input)
                elif self.orchestrator.state is SessionState.CHANNEL_ACTIVE:
                    await self.send(user_input)
                else:
                    print("No active chat. Use /chat <username> to start.")
        finally:
            self.running = False
            await self.orchestrator.logout()
            await self.api.aclose()
            if self.storage:
                self.storage.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd = parts[0].lower()

        try:
            if cmd == "/chat" and len(parts) >= 2:
                members = parts[1:]
                channel_id = "+".join(sorted(members)) if len(members) > 1 else None
                await self.orchestrator.open_channel(members, channel_id=channel_id)
                print(f"Chatting with {', '.join(members)}")
            elif cmd == "/users":
                print("Users:")
                for user in await self.orchestrator.list_users():
                    print(f"  - {user}")
            elif cmd == "/whoami":
                identity = self.orchestrator.identity
                print(f"{identity.identity_id} ({identity.fingerprint}), state {self.orchestrator.state.name}")
            elif cmd == "/rotate":
                identity = await self.orchestrator.rotate_identity_key()
                print(f"New key fingerprint {identity.fingerprint}")
            elif cmd == "/reconnect":
                await self.orchestrator.rebootstrap()
                print(f"State {self.orchestrator.state.name}")
            elif cmd == "/quit":
                self.running = False
            elif cmd == "/help":
                print(HELP)
            else:
                print("Unknown command. Type /help for help.")
        except E2EError as e:
            print(f"[{e.code}] {e.message}")


def open_key_storage(username: str, storage_dir: str, passphrase: str) -> Optional[EncryptedStorage]:
    """
    Unlock on-disk key storage with a dedicated passphrase.

    The account password is never reused here: in open mode it is blank and
    the username is public, so neither can protect the private key.

    Returns:
        Unlocked storage, or None if the passphrase is blank or wrong
    """
    if not passphrase:
        print("A storage passphrase is required to keep keys on disk (or use --ephemeral)")
        return None
    storage = EncryptedStorage(username, storage_dir)
    if not storage.unlock(passphrase):
        print("Failed to unlock local key storage with this passphrase")
        return None
    return storage


async def main(argv=None):
    """Main entry point"""
    parser = argparse.ArgumentParser(description="End-to-end encrypted chat client")
    parser.add_argument("--server", default="http://localhost:8000")
    parser.add_argument("--user")
    parser.add_argument("--storage-dir", default="client_data")
    parser.add_argument("--ephemeral", action="store_true", help="Do not keep the identity key on disk")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    print("=" * 50)
    print("End-to-End Encrypted Chat Client")
    print("=" * 50)

    username = args.user or input("Username: ").strip()
    password = getpass.getpass("Password (blank if the server runs in open mode): ") or None

    storage = None
    if not args.ephemeral:
        passphrase = getpass.getpass("Local key storage passphrase: ")
        storage = open_key_storage(username, args.storage_dir, passphrase)
        if storage is None:
            return 1

    client = ChatClient(
        ClientConfig(server_url=args.server, retain_keys=not args.ephemeral),
        storage=storage,
    )
    if await client.start(username, password):
        await client.run_interactive()

    print("\nGoodbye!")
    return 0


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
