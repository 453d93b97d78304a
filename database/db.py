import hashlib
import hmac
import json
import secrets
import sqlite3
from typing import Any, TypedDict

from backend.config import STAFF_PASSWORD, STAFF_USERNAME, DB_PATH


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000


class LedgerRow(TypedDict):
    student_id: str
    status: str
    verified_by_scan: bool
    verified_by_photo: bool
    scan_distance: float | None
    photo_distance: float | None
    manually_marked: bool


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=10)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_staff(cursor: sqlite3.Cursor) -> None:
    username = (STAFF_USERNAME or "").strip()
    password = (STAFF_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM staff_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO staff_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS staff_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        student_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        roll_number TEXT,
        department_id INTEGER,
        section_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS timetable (
        schedule_id INTEGER PRIMARY KEY,
        course_code TEXT,
        department_id INTEGER,
        section_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # Append-only reference descriptors (one row per captured angle)
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS student_faces (
        face_id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id TEXT NOT NULL,
        descriptor TEXT NOT NULL,        -- JSON array of floats
        image_path TEXT,
        registered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (student_id) REFERENCES students(student_id) ON DELETE CASCADE
    )
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_student_faces_student ON student_faces(student_id)")

    # One row per finalized session; session_id is the idempotency key.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_ledger (
        session_id TEXT PRIMARY KEY,
        schedule_id INTEGER NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD
        present_count INTEGER NOT NULL DEFAULT 0,
        absent_count INTEGER NOT NULL DEFAULT 0,
        recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_records (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        schedule_id INTEGER NOT NULL,
        date TEXT NOT NULL,
        student_id TEXT NOT NULL,
        status TEXT NOT NULL,            -- present | absent
        verified_by_scan INTEGER NOT NULL DEFAULT 0,
        verified_by_photo INTEGER NOT NULL DEFAULT 0,
        scan_distance REAL,
        photo_distance REAL,
        manually_marked INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (session_id) REFERENCES attendance_ledger(session_id) ON DELETE CASCADE,
        UNIQUE(session_id, student_id)
    )
    """)
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_attendance_records_schedule_date "
        "ON attendance_records(schedule_id, date)"
    )

    _ensure_default_staff(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Staff accounts
# -----------------------------
def create_staff_user(username: str, password: str) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO staff_users (username, password_hash)
        VALUES (?, ?)
        """,
        (clean_username, _hash_password(clean_password)),
    )
    staff_id = cur.lastrowid
    conn.commit()
    conn.close()
    return staff_id


def verify_staff_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM staff_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    staff_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": staff_id, "username": saved_username}


# -----------------------------
# Roster / timetable
# -----------------------------
def add_student(
    student_id: str,
    name: str,
    roll_number: str | None = None,
    department_id: int | None = None,
    section_id: int | None = None,
) -> str:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO students (student_id, name, roll_number, department_id, section_id)
        VALUES (?, ?, ?, ?, ?)
    """, (student_id, name, roll_number, department_id, section_id))
    conn.commit()
    conn.close()
    return student_id


def get_student(student_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, name, roll_number, department_id, section_id
        FROM students
        WHERE student_id = ?
    """, (student_id,))
    row = cur.fetchone()
    conn.close()
    return row


def add_schedule(
    schedule_id: int,
    course_code: str | None = None,
    department_id: int | None = None,
    section_id: int | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO timetable (schedule_id, course_code, department_id, section_id)
        VALUES (?, ?, ?, ?)
    """, (schedule_id, course_code, department_id, section_id))
    conn.commit()
    conn.close()
    return schedule_id


def get_schedule(schedule_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT schedule_id, course_code, department_id, section_id
        FROM timetable
        WHERE schedule_id = ?
    """, (schedule_id,))
    row = cur.fetchone()
    conn.close()
    return row


def get_eligible_students(schedule_id: int):
    """
    Students expected in a timetable slot: same department as the slot and,
    when the slot names a section, the same section.
    """
    schedule = get_schedule(schedule_id)
    if not schedule:
        return []
    _, _, department_id, section_id = schedule

    clauses: list[str] = []
    params: list[Any] = []
    if department_id is not None:
        clauses.append("department_id = ?")
        params.append(department_id)
    if section_id is not None:
        clauses.append("section_id = ?")
        params.append(section_id)
    where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT student_id, name, roll_number, department_id, section_id
        FROM students
        {where_sql}
        ORDER BY roll_number, name
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return rows


# -----------------------------
# Face descriptors
# -----------------------------
def add_face_descriptor(
    student_id: str,
    descriptor: list[float],
    *,
    image_path: str | None = None,
    max_count: int | None = None,
) -> tuple[int | None, int]:
    """
    Append one descriptor. Returns (face_id, total); face_id is None when the
    student already holds `max_count` descriptors.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        # serialize the count check with the insert
        cur.execute("BEGIN IMMEDIATE")
        cur.execute("SELECT COUNT(*) FROM student_faces WHERE student_id = ?", (student_id,))
        existing = int(cur.fetchone()[0])
        if max_count is not None and existing >= max_count:
            conn.rollback()
            return None, existing

        cur.execute(
            """
            INSERT INTO student_faces (student_id, descriptor, image_path)
            VALUES (?, ?, ?)
            """,
            (student_id, json.dumps([float(v) for v in descriptor]), image_path),
        )
        face_id = int(cur.lastrowid)
        conn.commit()
        return face_id, existing + 1
    finally:
        conn.close()


def get_face_descriptors(student_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT face_id, descriptor, image_path, registered_at
        FROM student_faces
        WHERE student_id = ?
        ORDER BY face_id
    """, (student_id,))
    rows = cur.fetchall()
    conn.close()
    return rows


def get_all_face_descriptors():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, descriptor, registered_at
        FROM student_faces
        ORDER BY student_id, face_id
    """)
    rows = cur.fetchall()
    conn.close()
    return rows


# -----------------------------
# Attendance ledger
# -----------------------------
def record_attendance(
    session_id: str,
    schedule_id: int,
    date: str,
    rows: list[LedgerRow],
) -> bool:
    """
    Write a finalized roster once per session. Returns False when the session
    was already recorded (the earlier write is kept untouched).
    """
    present = sum(1 for r in rows if r["status"] == "present")
    absent = len(rows) - present

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance_ledger (session_id, schedule_id, date, present_count, absent_count)
            VALUES (?, ?, ?, ?, ?)
            """,
            (session_id, schedule_id, date, present, absent),
        )
    except sqlite3.IntegrityError:
        conn.close()
        return False

    try:
        cur.executemany(
            """
            INSERT INTO attendance_records (
                session_id,
                schedule_id,
                date,
                student_id,
                status,
                verified_by_scan,
                verified_by_photo,
                scan_distance,
                photo_distance,
                manually_marked
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    session_id,
                    schedule_id,
                    date,
                    r["student_id"],
                    r["status"],
                    1 if r["verified_by_scan"] else 0,
                    1 if r["verified_by_photo"] else 0,
                    r["scan_distance"],
                    r["photo_distance"],
                    1 if r["manually_marked"] else 0,
                )
                for r in rows
            ],
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return True


def get_ledger_entry(session_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT session_id, schedule_id, date, present_count, absent_count, recorded_at
        FROM attendance_ledger
        WHERE session_id = ?
    """, (session_id,))
    row = cur.fetchone()
    conn.close()
    return row


def get_attendance_records(session_id: str):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, status, verified_by_scan, verified_by_photo,
               scan_distance, photo_distance, manually_marked
        FROM attendance_records
        WHERE session_id = ?
        ORDER BY student_id
    """, (session_id,))
    rows = cur.fetchall()
    conn.close()
    return rows
