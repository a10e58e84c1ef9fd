import logging
import sqlite3
import time

from homies_errors import StorageError

logger = logging.getLogger(__name__)


class Database:
    """SQLite primary store for users and messages."""

    def __init__(self, path):
        self.path = path

    # --------- DB init & helpers ----------
    def db_conn(self):
        return sqlite3.connect(self.path)

    def init_db(self):
        conn = self.db_conn()
        c = conn.cursor()

        # ---- Core tables ----
        c.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE COLLATE NOCASE,
                email TEXT DEFAULT NULL,
                pass_salt BLOB,
                pass_hash BLOB,
                status TEXT DEFAULT 'offline',
                last_seen INTEGER,
                created_at INTEGER
            );
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                sender TEXT NOT NULL,
                sender_id INTEGER,
                content TEXT NOT NULL,
                encrypted INTEGER DEFAULT 0,
                channel TEXT DEFAULT 'general',
                timestamp INTEGER NOT NULL
            );
        """)
        conn.commit()
        conn.close()

    # ---------- users ----------
    def save_user(self, username, salt_bytes, hash_bytes, email=None):
        now = int(time.time())
        conn = self.db_conn(); c = conn.cursor()
        try:
            c.execute(
                "INSERT INTO users (username, email, pass_salt, pass_hash, status, created_at) VALUES (?, ?, ?, ?, 'offline', ?)",
                (username, email, sqlite3.Binary(salt_bytes), sqlite3.Binary(hash_bytes), now)
            )
            uid = c.lastrowid
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            return None
        finally:
            conn.close()
        return self.find_user(username) if uid else None

    def find_user(self, username_or_email):
        """Case-insensitive lookup by username, then by email."""
        conn = self.db_conn(); c = conn.cursor()
        c.execute(
            "SELECT id, username, email, pass_salt, pass_hash, status, last_seen FROM users "
            "WHERE username = ? COLLATE NOCASE OR email = ? COLLATE NOCASE "
            "ORDER BY (username = ? COLLATE NOCASE) DESC LIMIT 1",
            (username_or_email, username_or_email, username_or_email)
        )
        r = c.fetchone(); conn.close()
        if not r:
            return None
        salt, hashed = r[3], r[4]
        if isinstance(salt, memoryview): salt = bytes(salt)
        if isinstance(hashed, memoryview): hashed = bytes(hashed)
        return {"id": r[0], "username": r[1], "email": r[2], "pass_salt": salt,
                "pass_hash": hashed, "status": r[5], "last_seen": r[6]}

    def update_user_status(self, username, status, last_seen=None):
        last_seen = int(last_seen if last_seen is not None else time.time())
        try:
            conn = self.db_conn(); c = conn.cursor()
            c.execute("UPDATE users SET status = ?, last_seen = ? WHERE username = ? COLLATE NOCASE",
                      (status, last_seen, username))
            conn.commit(); conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"status update failed for {username}: {e}") from e

    # ---------- messages ----------
    def insert_message(self, message):
        try:
            conn = self.db_conn(); c = conn.cursor()
            c.execute(
                "INSERT OR IGNORE INTO messages (id, sender, sender_id, content, encrypted, channel, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (message["id"], message["sender"], message.get("senderId"), message["content"],
                 1 if message.get("encrypted") else 0, message.get("channel") or "general",
                 message["timestamp"])
            )
            conn.commit(); conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"insert_message failed: {e}") from e

    def list_messages(self):
        try:
            conn = self.db_conn(); c = conn.cursor()
            c.execute(
                "SELECT id, sender, sender_id, content, encrypted, channel, timestamp "
                "FROM messages ORDER BY seq ASC"
            )
            rows = c.fetchall(); conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"list_messages failed: {e}") from e

        return [{
            "id": mid,
            "sender": sender,
            "senderId": sender_id,
            "content": content,
            "encrypted": bool(encrypted),
            "channel": channel,
            "timestamp": ts,
        } for mid, sender, sender_id, content, encrypted, channel, ts in rows]
