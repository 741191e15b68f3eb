#!/usr/bin/env python3
"""
CLI Client for End-to-End Encrypted Ephemeral Chat

Provides a command-line interface for:
- User registration and login
- RSA-OAEP identity keys kept in an encrypted local key store
- Hybrid-encrypted messaging with view-once and timed auto-delete
- Identity repair and key regeneration
"""

import asyncio
import logging
import os
import sys
import getpass
from typing import Optional
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from e2ee import IdentityKeyManager
from chat_client.errors import ChatError, ContentPurgedError
from chat_client.interfaces import EventKind
from chat_client.keystore import KeyStore
from chat_client.lifecycle import time_remaining
from chat_client.models import LifecyclePolicy, MediaType
from chat_client.remote import ApiClient, HttpDirectory, HttpMessageStore, WebSocketRealtimeBus
from chat_client.session import ConversationSession, LocalMessage

logger = logging.getLogger(__name__)

HELP = """Commands:
  /chat <username> - Start chat with user
  /exit - Leave current chat
  /users - List all users
  /online - List online users
  /policy <none|view|1h|3h|30m> - Auto-delete mode for new messages
  /snap <text> - Send a view-once snapshot
  /open <n> - Open message number n
  /close <n> - Close message n (archives view-once content)
  /save <n> - Save message n to the vault
  /react <n> <emoji> - Toggle a reaction
  /history - Show current conversation
  /clear - Delete the whole conversation
  /repair - Republish this device's public key
  /rotate - Regenerate identity keys (past messages become unreadable)
  /quit - Quit application"""


class ChatClient:
    """
    End-to-end encrypted ephemeral chat client.
    """

    def __init__(self, server_url: str = "http://localhost:8000"):
        """
        Initialize chat client.

        Args:
            server_url: Base URL of the chat server
        """
        self.api = ApiClient(server_url)
        self.identity = IdentityKeyManager()
        self.keystore: Optional[KeyStore] = None
        self.session: Optional[ConversationSession] = None
        self.policy = LifecyclePolicy.none()
        self.running = False

    @property
    def username(self) -> Optional[str]:
        return self.api.username

    def _open_keystore(self, username: str, password: str) -> bool:
        self.keystore = KeyStore(username)
        if not self.keystore.unlock(password):
            print("Failed to unlock key store with this password")
            return False
        self.policy = LifecyclePolicy.parse(self.keystore.load_preference("auto_delete", "none"))
        return True

    def _store_identity(self):
        self.keystore.save_identity(self.identity.private_key_b64, self.identity.public_key_b64)

    async def register(self, username: str, password: str) -> bool:
        """
        Register a new user account and publish a fresh public key.

        Returns:
            True if successful
        """
        if not self._open_keystore(username, password):
            return False
        print("Generating identity keys...")
        stored = self.keystore.load_identity()
        await asyncio.to_thread(self.identity.load_or_generate, stored and stored["private"])
        try:
            await self.api.register(username, password, public_key=self.identity.public_key_b64)
        except ChatError as e:
            print(f"Registration failed: {e}")
            return False
        self._store_identity()
        print(f"Registration successful! Welcome, {username}")
        return True

    async def login(self, username: str, password: str) -> bool:
        """
        Login with existing account and load the identity from the key store.

        Returns:
            True if successful
        """
        try:
            await self.api.login(username, password)
        except ChatError as e:
            print(f"Login failed: {e}")
            return False
        if not self._open_keystore(username, password):
            return False

        stored = self.keystore.load_identity()
        generated = await asyncio.to_thread(self.identity.load_or_generate, stored and stored["private"])
        if generated:
            # New device: messages sent to the old key stay unreadable here
            print("No identity on this device, generated a new one")
            self._store_identity()
            await HttpDirectory(self.api).publish_public_key(username, self.identity.public_key_b64)

        print(f"Login successful! Welcome back, {username}")
        return True

    def _on_change(self, kind: EventKind, message_id: str, local: Optional[LocalMessage]):
        if kind != EventKind.INSERT or local is None:
            return
        if local.record.sender_id != self.username:
            print(f"\n{self._format(local)}")

    def _format(self, local: LocalMessage, index: Optional[int] = None) -> str:
        record = local.record
        prefix = "You" if record.sender_id == self.username else record.sender_id
        timestamp = record.created_at.astimezone().strftime("%H:%M")
        number = f"#{index} " if index is not None else ""

        if record.is_view_once and record.is_receiver(self.username) and not record.is_saved:
            body = "[view-once message, /open to reveal]"
        elif local.content is None:
            body = "[content no longer available]"
        elif local.content.needs_identity_repair:
            body = "[encrypted for an old key, run /repair]"
        else:
            body = local.content.text
        if record.media_url:
            body = f"{body} <{record.media_type.value}: {record.media_url}>"

        flags = []
        if record.is_saved:
            flags.append("saved")
        remaining = time_remaining(record)
        if remaining:
            flags.append(remaining)
        if record.reactions:
            flags.append(" ".join(f"{emoji}{len(users)}" for emoji, users in record.reactions.items()))
        suffix = f" ({', '.join(flags)})" if flags else ""
        return f"{number}[{timestamp}] {prefix}: {body}{suffix}"

    def _message_id(self, number: str) -> str:
        messages = self.session.messages
        index = int(number)
        if not 1 <= index <= len(messages):
            raise ValueError(f"No message #{index}")
        return messages[index - 1].record.id

    async def start_chat(self, peer_username: str):
        """
        Start or continue a chat with a user.

        Args:
            peer_username: Username to chat with
        """
        await self.leave_chat()
        self.session = ConversationSession(
            user_id=self.username,
            peer_id=peer_username,
            identity=self.identity,
            store=HttpMessageStore(self.api),
            bus=WebSocketRealtimeBus(self.api),
            directory=HttpDirectory(self.api),
            on_change=self._on_change,
        )
        try:
            await self.session.start()
        except ChatError as e:
            print(f"Failed to start chat: {e}")
            self.session = None
            return

        self.show_history()
        if any(m.content and m.content.needs_identity_repair for m in self.session.messages):
            print("Some messages were encrypted for a different key. Use /repair to resynchronize.")
        print(f"Chatting with {peer_username} (auto-delete: {self.policy.mode}). Type /help for commands.")

    async def leave_chat(self):
        if self.session is not None:
            await self.session.close()
            self.session = None

    def show_history(self):
        messages = self.session.messages
        if not messages:
            return
        print("\n--- Message History ---")
        for index, local in enumerate(messages, start=1):
            print(self._format(local, index))
        print("--- End History ---\n")

    async def send_message(self, text: str, media_type: MediaType = MediaType.TEXT):
        try:
            await self.session.send(text, policy=self.policy, media_type=media_type)
        except ChatError as e:
            print(f"Failed to send message: {e}")

    async def run_interactive(self):
        """Run interactive chat session"""
        self.running = True
        session = PromptSession()
        print()
        print(HELP)
        print()

        try:
            while self.running:
                try:
                    if self.session:
                        prompt_text = f"[{self.session.peer_id}] > "
                    else:
                        prompt_text = "> "

                    with patch_stdout():
                        user_input = await session.prompt_async(prompt_text)

                    if not user_input:
                        continue

                    if user_input.startswith("/"):
                        await self._handle_command(user_input)
                    elif self.session:
                        await self.send_message(user_input)
                    else:
                        print("No active chat. Use /chat <username> to start.")

                except (KeyboardInterrupt, EOFError):
                    break

        finally:
            self.running = False
            await self.leave_chat()
            await self.api.aclose()
            if self.keystore:
                self.keystore.close()

    async def _handle_command(self, command: str):
        """Handle slash commands"""
        parts = command.split()
        cmd, args = parts[0].lower(), parts[1:]

        try:
            if cmd == "/chat" and len(args) == 1:
                await self.start_chat(args[0])
            elif cmd == "/exit":
                await self.leave_chat()
                print("Exited chat")
            elif cmd == "/users":
                print("Registered users:")
                for user in await self.api.list_users():
                    print(f"  - {user}")
            elif cmd == "/online":
                data = await self.api.request("GET", "/api/users/online")
                print("Online users:")
                for user in data["users"]:
                    if user != self.username:
                        print(f"  - {user}")
            elif cmd == "/policy" and len(args) == 1:
                self.policy = LifecyclePolicy.parse(args[0])
                self.keystore.save_preference("auto_delete", self.policy.mode)
                print(f"Auto-delete: {self.policy.mode}")
            elif cmd == "/quit":
                self.running = False
            elif cmd == "/help":
                print(HELP)
            elif self.session is None:
                print("No active chat. Use /chat <username> to start.")
            else:
                await self._handle_chat_command(cmd, args)
        except ContentPurgedError:
            print("Purged: content no longer available")
        except (ChatError, ValueError) as e:
            print(f"Error: {e}")

    async def _handle_chat_command(self, cmd: str, args):
        if cmd == "/snap" and args:
            await self.send_message(" ".join(args), media_type=MediaType.SNAPSHOT)
        elif cmd == "/open" and len(args) == 1:
            content = await self.session.open_message(self._message_id(args[0]))
            print(f">>> {content.text}")
        elif cmd == "/close" and len(args) == 1:
            await self.session.close_message(self._message_id(args[0]))
        elif cmd == "/save" and len(args) == 1:
            await self.session.save_message(self._message_id(args[0]))
            print("Signal archived in Vault")
        elif cmd == "/react" and len(args) == 2:
            await self.session.toggle_reaction(self._message_id(args[0]), args[1])
        elif cmd == "/history":
            self.show_history()
        elif cmd == "/clear":
            answer = input("Delete the whole conversation for both of you? [y/N] ").strip().lower()
            if answer == "y":
                await self.session.clear()
                print("Chat cleared successfully")
        elif cmd == "/repair":
            await self.session.repair_identity()
            print("Security identity synchronized. Future messages will be readable.")
        elif cmd == "/rotate":
            answer = input(
                "Regenerating keys will make all past messages unreadable on this device. Continue? [y/N] "
            ).strip().lower()
            if answer == "y":
                await self.session.rotate_identity(acknowledge_data_loss=True)
                self._store_identity()
                print("Security keys regenerated")
        else:
            print("Unknown command. Type /help for help.")


async def main():
    """Main entry point"""
    logging.basicConfig(
        level=os.environ.get("VAULTLINE_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    client = ChatClient(os.environ.get("VAULTLINE_SERVER_URL", "http://localhost:8000"))

    print("=" * 50)
    print("End-to-End Encrypted Ephemeral Chat")
    print("=" * 50)
    print()

    while True:
        print("1. Register")
        print("2. Login")
        print("3. Quit")
        choice = input("Choose an option: ").strip()

        if choice == "1":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.register(username, password):
                break
        elif choice == "2":
            username = input("Username: ").strip()
            password = getpass.getpass("Password: ")
            if await client.login(username, password):
                break
        elif choice == "3":
            await client.api.aclose()
            return
        else:
            print("Invalid choice")

    await client.run_interactive()
    print("\nGoodbye!")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
