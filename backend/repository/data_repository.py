"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, Optional, Sequence

from backend.domain.constraints import BLOCKING_STATUSES, window_conflicts
from backend.domain.models import Event, EventStatus, Resource
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)

_TIMESTAMP_FORMAT = "seconds"


class BookingNotFoundError(LookupError):
    """Raised when a booking id does not match an active booking row."""


class ResourceNotFoundError(LookupError):
    """Raised when a car id does not match an active car row."""


class BookingConflictError(RuntimeError):
    """Raised when a write would double-book a car and no override was given."""

    def __init__(self, message: str, conflicting_ids: Sequence[str]) -> None:
        super().__init__(message)
        self.conflicting_ids = tuple(conflicting_ids)


def _to_db(value: datetime) -> str:
    return value.isoformat(timespec=_TIMESTAMP_FORMAT)


def _from_db(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "")).replace(tzinfo=None)


_EVENT_COLUMNS = """
    b.booking_id,
    b.car_id,
    b.customer_name,
    b.customer_email,
    b.customer_phone,
    b.driver_name,
    b.start_date,
    b.end_date,
    b.booking_status,
    b.payment_status,
    b.total_price,
    b.pickup_location,
    b.dropoff_location,
    b.buffer_minutes AS buffer_override,
    COALESCE(b.buffer_minutes, CAST(ROUND(c.buffer_hours * 60) AS INTEGER), 0) AS buffer_minutes
"""


class DataRepository:
    """Encapsulates SQLite access so business logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Cars (
                        car_id TEXT PRIMARY KEY,
                        brand TEXT NOT NULL,
                        model TEXT NOT NULL,
                        plate_number TEXT NOT NULL,
                        transmission TEXT,
                        fuel_type TEXT,
                        buffer_hours REAL NOT NULL DEFAULT 0 CHECK (buffer_hours >= 0),
                        image_url TEXT,
                        is_archived INTEGER NOT NULL DEFAULT 0 CHECK (is_archived IN (0,1))
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Bookings (
                        booking_id TEXT PRIMARY KEY,
                        car_id TEXT NOT NULL,
                        customer_name TEXT,
                        customer_email TEXT,
                        customer_phone TEXT,
                        driver_name TEXT,
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        booking_status TEXT NOT NULL DEFAULT 'pending',
                        payment_status TEXT,
                        total_price REAL NOT NULL DEFAULT 0,
                        pickup_location TEXT,
                        dropoff_location TEXT,
                        buffer_minutes INTEGER CHECK (buffer_minutes IS NULL OR buffer_minutes >= 0),
                        is_archived INTEGER NOT NULL DEFAULT 0 CHECK (is_archived IN (0,1)),
                        last_updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (car_id) REFERENCES Cars(car_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Refunds (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        amount REAL NOT NULL CHECK (amount >= 0),
                        reason TEXT NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (booking_id) REFERENCES Bookings(booking_id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_bookings_car_range
                    ON Bookings(car_id, start_date, end_date);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_fleet(self, reference: Optional[datetime] = None) -> None:
        """Seed a small deterministic fleet and bookings only when tables are empty."""
        today = (reference or datetime.now()).replace(hour=0, minute=0, second=0, microsecond=0)
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute("SELECT COUNT(*) AS count FROM Cars;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Demo fleet already present; skipping seed")
                    return

                cars = [
                    ("car-vios", "Toyota", "Vios", "NAB 1234", "Automatic", "Gas", 2),
                    ("car-city", "Honda", "City", "NCD 5678", "Automatic", "Gas", 1),
                    ("car-montero", "Mitsubishi", "Montero Sport", "NEF 9012", "Automatic", "Diesel", 3),
                    ("car-innova", "Toyota", "Innova", "NGH 3456", "Manual", "Diesel", 2),
                    ("car-terra", "Nissan", "Terra", "NIJ 7890", "Automatic", "Diesel", 0),
                    ("car-mirage", "Mitsubishi", "Mirage G4", "NKL 2468", "Manual", "Gas", 1),
                ]
                cursor.executemany(
                    """
                    INSERT INTO Cars (
                        car_id, brand, model, plate_number, transmission, fuel_type, buffer_hours
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    cars,
                )

                def at(days: int, hour: int) -> str:
                    return _to_db(today + timedelta(days=days, hours=hour))

                bookings = [
                    ("bk-1001", "car-vios", "Maria Santos", at(-2, 9), at(0, 10), "ongoing", "paid", 4500.0),
                    ("bk-1002", "car-vios", "Jose Cruz", at(1, 14), at(4, 14), "confirmed", "paid", 6750.0),
                    ("bk-1003", "car-city", "Ana Reyes", at(0, 8), at(2, 8), "pending", "unpaid", 4200.0),
                    ("bk-1004", "car-montero", "Paolo Garcia", at(-1, 10), at(3, 10), "confirmed", "partial", 12000.0),
                    ("bk-1005", "car-innova", "Liza Mendoza", at(-5, 9), at(-2, 9), "completed", "paid", 7500.0),
                    ("bk-1006", "car-innova", "Ramon Torres", at(0, 13), at(1, 13), "pending", "unpaid", 2500.0),
                    ("bk-1007", "car-terra", "Carla Villanueva", at(2, 9), at(5, 9), "pending", "unpaid", 9000.0),
                    ("bk-1008", "car-mirage", "Miguel Bautista", at(-1, 9), at(0, 9), "no_show", "unpaid", 1800.0),
                ]
                cursor.executemany(
                    """
                    INSERT INTO Bookings (
                        booking_id, car_id, customer_name, start_date, end_date,
                        booking_status, payment_status, total_price
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    bookings,
                )
                cursor.execute(
                    """
                    INSERT INTO Bookings (booking_id, car_id, customer_name, start_date, end_date, booking_status)
                    VALUES (?, ?, ?, ?, ?, 'maintenance');
                    """,
                    ("mt-2001", "car-mirage", "Maintenance", at(1, 8), at(2, 8)),
                )
                conn.commit()
            logger.info("Demo fleet seeded | cars=%s | bookings=%s", len(cars), len(bookings) + 1)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo fleet seeding failed: {exc}") from exc

    def create_car(
        self,
        car_id: str,
        brand: str,
        model: str,
        plate_number: str,
        *,
        transmission: Optional[str] = None,
        fuel_type: Optional[str] = None,
        buffer_hours: float = 0,
        image_url: Optional[str] = None,
    ) -> str:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO Cars (
                    car_id, brand, model, plate_number, transmission, fuel_type, buffer_hours, image_url
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (car_id, brand, model, plate_number, transmission, fuel_type, buffer_hours, image_url),
            )
            conn.commit()
        return car_id

    def create_booking(
        self,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        booking_id: Optional[str] = None,
        customer_name: Optional[str] = None,
        status: EventStatus = EventStatus.PENDING,
        total_price: float = 0.0,
        payment_status: Optional[str] = None,
        buffer_minutes: Optional[int] = None,
    ) -> str:
        """Insert a booking row and return its id."""
        new_id = booking_id or str(uuid.uuid4())
        with self._connect() as conn:
            self._require_car(conn, car_id)
            conn.execute(
                """
                INSERT INTO Bookings (
                    booking_id, car_id, customer_name, start_date, end_date,
                    booking_status, payment_status, total_price, buffer_minutes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    new_id,
                    car_id,
                    customer_name,
                    _to_db(start),
                    _to_db(end),
                    EventStatus(status).value,
                    payment_status,
                    total_price,
                    buffer_minutes,
                ),
            )
            conn.commit()
        return new_id

    def list_resources(self) -> list[Resource]:
        """Return non-archived cars ordered by brand, as timeline rows."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT car_id, brand, model, plate_number, transmission, fuel_type, image_url
                FROM Cars
                WHERE is_archived = 0
                ORDER BY brand ASC, model ASC, car_id ASC;
                """
            )
            return [
                Resource(
                    resource_id=str(row["car_id"]),
                    title=f"{row['brand']} {row['model']}",
                    subtitle=str(row["plate_number"]),
                    image=row["image_url"],
                    tags=(row["transmission"] or "Unknown", row["fuel_type"] or "Gas"),
                )
                for row in cursor.fetchall()
            ]

    def list_events_in_range(self, range_start: datetime, range_end: datetime) -> list[Event]:
        """Bookings whose occupied span touches [range_start, range_end].

        The lower bound uses the end plus the turnaround buffer, so a booking
        that ends just before the window still shows up as a peer when its
        buffer reaches into it. Archived rows are excluded.
        """
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM Bookings AS b
                INNER JOIN Cars AS c ON c.car_id = b.car_id
                WHERE b.is_archived = 0
                  AND c.is_archived = 0
                  AND b.start_date <= ?
                  AND strftime(
                      '%Y-%m-%dT%H:%M:%S',
                      b.end_date,
                      '+' || COALESCE(b.buffer_minutes, CAST(ROUND(c.buffer_hours * 60) AS INTEGER), 0) || ' minutes'
                  ) >= ?
                ORDER BY b.start_date ASC, b.booking_id ASC;
                """,
                (_to_db(range_end), _to_db(range_start)),
            )
            return [self._row_to_event(row) for row in cursor.fetchall()]

    def get_event(self, booking_id: str) -> Optional[Event]:
        with self._connect() as conn:
            row = self._fetch_booking_row(conn, booking_id)
        if row is None:
            return None
        return self._row_to_event(row)

    def update_booking_status(self, booking_id: str, status: EventStatus) -> None:
        self._update_booking(booking_id, "booking_status = ?", (EventStatus(status).value,))
        logger.info("Booking status updated | booking_id=%s | status=%s", booking_id, EventStatus(status).value)

    def update_booking_end(self, booking_id: str, new_end: datetime) -> None:
        self._update_booking(booking_id, "end_date = ?", (_to_db(new_end),))
        logger.info("Booking end updated | booking_id=%s | end=%s", booking_id, _to_db(new_end))

    def update_buffer(self, booking_id: str, buffer_minutes: int) -> None:
        if buffer_minutes < 0:
            raise ValueError("buffer_minutes must be >= 0")
        self._update_booking(booking_id, "buffer_minutes = ?", (int(buffer_minutes),))
        logger.info("Booking buffer updated | booking_id=%s | buffer_minutes=%s", booking_id, buffer_minutes)

    def split_booking(self, booking_id: str, split_at: datetime) -> str:
        """Cut a booking at `split_at`; the tail becomes a pending "(Part 2)" copy.

        The price is divided in proportion to each part's duration.
        """
        new_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = self._require_booking(conn, booking_id)
            start = _from_db(row["start_date"])
            end = _from_db(row["end_date"])
            if not start < split_at < end:
                raise ValueError("split point must fall strictly inside the booking")

            total = float(row["total_price"] or 0.0)
            head_share = (split_at - start).total_seconds() / (end - start).total_seconds()
            head_price = round(total * head_share, 2)
            tail_price = round(total - head_price, 2)
            customer = row["customer_name"] or "Guest User"

            conn.execute(
                """
                UPDATE Bookings
                SET end_date = ?, total_price = ?, last_updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ?;
                """,
                (_to_db(split_at), head_price, booking_id),
            )
            conn.execute(
                """
                INSERT INTO Bookings (
                    booking_id, car_id, customer_name, customer_email, customer_phone,
                    driver_name, start_date, end_date, booking_status, payment_status,
                    total_price, pickup_location, dropoff_location, buffer_minutes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?, ?);
                """,
                (
                    new_id,
                    row["car_id"],
                    f"{customer} (Part 2)",
                    row["customer_email"],
                    row["customer_phone"],
                    row["driver_name"],
                    _to_db(split_at),
                    row["end_date"],
                    row["payment_status"],
                    tail_price,
                    row["pickup_location"],
                    row["dropoff_location"],
                    row["buffer_override"],
                ),
            )
            conn.commit()
        logger.info(
            "Booking split | booking_id=%s | new_booking_id=%s | split_at=%s",
            booking_id,
            new_id,
            _to_db(split_at),
        )
        return new_id

    def reassign_booking(
        self,
        booking_id: str,
        new_car_id: str,
        new_price: float,
        *,
        override: bool = False,
        displaced_ids: Iterable[str] = (),
    ) -> list[str]:
        """Move a booking to another car and confirm it.

        Without override any conflict on the target car aborts the write. With
        override the colliding bookings are marked displaced in the same
        transaction; the ids actually bumped are returned.
        """
        with self._connect() as conn:
            row = self._require_booking(conn, booking_id)
            self._require_car(conn, new_car_id)
            conflicts = self._conflicting_ids(
                conn,
                new_car_id,
                _from_db(row["start_date"]),
                _from_db(row["end_date"]),
                excluding_booking_id=booking_id,
            )
            if conflicts and not override:
                raise BookingConflictError(
                    f"car {new_car_id} is already booked in that window",
                    conflicts,
                )
            bumped = sorted((set(conflicts) | set(displaced_ids)) - {booking_id}) if override else []

            conn.execute(
                """
                UPDATE Bookings
                SET car_id = ?, total_price = ?, booking_status = 'confirmed',
                    last_updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ?;
                """,
                (new_car_id, float(new_price), booking_id),
            )
            if bumped:
                placeholders = ",".join("?" for _ in bumped)
                conn.execute(
                    f"""
                    UPDATE Bookings
                    SET booking_status = 'displaced', last_updated_at = CURRENT_TIMESTAMP
                    WHERE booking_id IN ({placeholders});
                    """,
                    tuple(bumped),
                )
            conn.commit()
        logger.info(
            "Booking reassigned | booking_id=%s | car_id=%s | override=%s | displaced=%s",
            booking_id,
            new_car_id,
            override,
            bumped,
        )
        return bumped

    def process_early_return(
        self,
        booking_id: str,
        new_end: datetime,
        final_price: float,
        refund_amount: float,
        should_refund: bool,
    ) -> None:
        """Close an ongoing booking early, optionally recording a refund row."""
        with self._connect() as conn:
            self._require_booking(conn, booking_id)
            conn.execute(
                """
                UPDATE Bookings
                SET end_date = ?, booking_status = 'completed', total_price = ?,
                    last_updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ?;
                """,
                (_to_db(new_end), float(final_price), booking_id),
            )
            if should_refund and refund_amount > 0:
                conn.execute(
                    """
                    INSERT INTO Refunds (booking_id, amount, reason)
                    VALUES (?, ?, 'early_return');
                    """,
                    (booking_id, float(refund_amount)),
                )
            conn.commit()
        logger.info(
            "Early return processed | booking_id=%s | end=%s | final_price=%.2f | refund=%.2f",
            booking_id,
            _to_db(new_end),
            final_price,
            refund_amount if should_refund else 0.0,
        )

    def create_maintenance_block(self, car_id: str, start: datetime, end: datetime) -> str:
        if end <= start:
            raise ValueError("maintenance end must be after its start")
        block_id = self.create_booking(
            car_id,
            start,
            end,
            customer_name="Maintenance",
            status=EventStatus.MAINTENANCE,
        )
        logger.info("Maintenance block created | car_id=%s | booking_id=%s", car_id, block_id)
        return block_id

    def check_conflict(
        self,
        car_id: str,
        start: datetime,
        end: datetime,
        excluding_booking_id: Optional[str] = None,
    ) -> list[str]:
        """Authoritative buffer-inclusive conflict check; returns conflicting ids."""
        with self._connect() as conn:
            self._require_car(conn, car_id)
            return self._conflicting_ids(
                conn,
                car_id,
                start,
                end,
                excluding_booking_id=excluding_booking_id,
            )

    def list_refunds(self, booking_id: str) -> list[float]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT amount FROM Refunds WHERE booking_id = ? ORDER BY id ASC;",
                (booking_id,),
            )
            return [float(row["amount"]) for row in cursor.fetchall()]

    def count_bookings(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Bookings WHERE is_archived = 0;")
            return int(cursor.fetchone()["count"])

    def count_cars(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM Cars WHERE is_archived = 0;")
            return int(cursor.fetchone()["count"])

    def _conflicting_ids(
        self,
        conn: sqlite3.Connection,
        car_id: str,
        start: datetime,
        end: datetime,
        *,
        excluding_booking_id: Optional[str] = None,
    ) -> list[str]:
        placeholders = ",".join("?" for _ in BLOCKING_STATUSES)
        cursor = conn.cursor()
        cursor.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM Bookings AS b
            INNER JOIN Cars AS c ON c.car_id = b.car_id
            WHERE b.car_id = ?
              AND b.is_archived = 0
              AND b.booking_status IN ({placeholders});
            """,
            (car_id, *sorted(status.value for status in BLOCKING_STATUSES)),
        )
        peers = [
            event
            for event in (self._row_to_event(row) for row in cursor.fetchall())
            if event.event_id != excluding_booking_id
        ]
        cursor.execute("SELECT buffer_hours FROM Cars WHERE car_id = ?;", (car_id,))
        car_row = cursor.fetchone()
        candidate_buffer = int(round(float(car_row["buffer_hours"]) * 60)) if car_row else 0
        return [
            event.event_id
            for event in window_conflicts(car_id, start, end, peers, buffer_minutes=candidate_buffer)
        ]

    def _update_booking(self, booking_id: str, assignment: str, params: tuple) -> None:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Bookings
                SET {assignment}, last_updated_at = CURRENT_TIMESTAMP
                WHERE booking_id = ? AND is_archived = 0;
                """,
                (*params, booking_id),
            )
            if cursor.rowcount == 0:
                raise BookingNotFoundError(f"booking {booking_id} not found")
            conn.commit()

    @staticmethod
    def _fetch_booking_row(conn: sqlite3.Connection, booking_id: str) -> Optional[sqlite3.Row]:
        cursor = conn.cursor()
        cursor.execute(
            f"""
            SELECT {_EVENT_COLUMNS}
            FROM Bookings AS b
            INNER JOIN Cars AS c ON c.car_id = b.car_id
            WHERE b.booking_id = ? AND b.is_archived = 0;
            """,
            (booking_id,),
        )
        return cursor.fetchone()

    def _require_booking(self, conn: sqlite3.Connection, booking_id: str) -> sqlite3.Row:
        row = self._fetch_booking_row(conn, booking_id)
        if row is None:
            raise BookingNotFoundError(f"booking {booking_id} not found")
        return row

    @staticmethod
    def _require_car(conn: sqlite3.Connection, car_id: str) -> None:
        cursor = conn.cursor()
        cursor.execute("SELECT 1 FROM Cars WHERE car_id = ? AND is_archived = 0;", (car_id,))
        if cursor.fetchone() is None:
            raise ResourceNotFoundError(f"car {car_id} not found")

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> Event:
        status = EventStatus(str(row["booking_status"]).lower())
        title = "Maintenance" if status is EventStatus.MAINTENANCE else (row["customer_name"] or "Guest User")
        return Event(
            event_id=str(row["booking_id"]),
            resource_id=str(row["car_id"]),
            start=_from_db(row["start_date"]),
            end=_from_db(row["end_date"]),
            status=status,
            buffer_minutes=max(0, int(row["buffer_minutes"] or 0)),
            title=title,
            subtitle=status.value,
            amount=float(row["total_price"] or 0.0),
            payment_status=row["payment_status"],
            pickup_location=row["pickup_location"],
            dropoff_location=row["dropoff_location"],
            driver_name=row["driver_name"],
            customer_email=row["customer_email"],
            customer_phone=row["customer_phone"],
        )
