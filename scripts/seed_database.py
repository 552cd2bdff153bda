#!/usr/bin/env python3
"""
Database Seeder for the Presence Certification Service

Creates a small demo data set to walk through both certification paths.

Usage:
    # From project root with venv activated:
    python scripts/seed_database.py

    # With options:
    python scripts/seed_database.py --participants 20 --clear

Creates:
    - One organizer and N identity-verified participants
    - An operator-witnessed event running now, one self-attested event
      running now, one upcoming event and one event without coordinates
    - A registration of every participant to every event
"""
import argparse
import os
import random
import sys
from datetime import timedelta

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from presence_cert.db import models  # noqa: E402
from presence_cert.db.database import SessionLocal, create_tables  # noqa: E402
from presence_cert.timeutils import utc_now  # noqa: E402

DEFAULT_NUM_PARTICIPANTS = 10

FIRST_NAMES = ["Alex", "Sam", "Charlie", "Robin", "Camille", "Dominique", "Jordan", "Morgan", "Noa", "Sacha"]
LAST_NAMES = ["Martin", "Bernard", "Dubois", "Thomas", "Robert", "Petit", "Durand", "Leroy", "Moreau", "Simon"]

# Paris, Place de la Republique
VENUE = (48.8674, 2.3636)


def clear_tables(db) -> None:
    for model in (
        models.CertificationLog, models.CertificationAttachment, models.VerificationToken,
        models.EventRegistration, models.Event, models.User
    ):
        db.query(model).delete()
    db.commit()


def seed_database(db, num_participants: int = DEFAULT_NUM_PARTICIPANTS, clear_existing: bool = False) -> dict:
    """Insert the demo data set and return the created counts."""
    if clear_existing:
        print("Clearing existing data...")
        clear_tables(db)

    now = utc_now()

    print("\n1. Seeding users...")
    organizer = models.User(email="organizer@example.org", first_name="Event", last_name="Organizer",
                            id_verified=True, id_verified_at=now)
    db.add(organizer)
    participants = []
    for i in range(num_participants):
        first, last = random.choice(FIRST_NAMES), random.choice(LAST_NAMES)
        participants.append(models.User(
            email=f"{first.lower()}.{last.lower()}.{i}@example.org",
            first_name=first,
            last_name=last,
            id_verified=True,
            id_verified_at=now - timedelta(days=random.randint(1, 200)),
            reference_selfie_url=f"https://storage.example.org/selfies/{i}.jpg"
        ))
    db.add_all(participants)
    db.flush()
    print(f"  Created {num_participants} participants and 1 organizer")

    print("\n2. Seeding events...")
    events = [
        models.Event(name="Morning meetup (organizer scan)", start_date=now - timedelta(hours=1),
                     end_date=now + timedelta(hours=2), latitude=VENUE[0], longitude=VENUE[1],
                     address="Place de la Republique, Paris",
                     certification_mode=models.CertificationMode.OPERATOR),
        models.Event(name="City walk (self-certification)", start_date=now - timedelta(minutes=30),
                     end_date=now + timedelta(hours=3), latitude=VENUE[0], longitude=VENUE[1],
                     address="Place de la Republique, Paris",
                     certification_mode=models.CertificationMode.SELF_ATTESTED),
        models.Event(name="Evening talk (upcoming)", start_date=now + timedelta(hours=8),
                     end_date=now + timedelta(hours=10), latitude=VENUE[0], longitude=VENUE[1],
                     certification_mode=models.CertificationMode.OPERATOR),
        models.Event(name="Online session (no location)", start_date=now - timedelta(hours=1),
                     end_date=now + timedelta(hours=1),
                     certification_mode=models.CertificationMode.SELF_ATTESTED),
    ]
    db.add_all(events)
    db.flush()
    print(f"  Created {len(events)} events")

    print("\n3. Seeding registrations...")
    count = 0
    for event in events:
        for participant in participants:
            db.add(models.EventRegistration(
                user_id=participant.id,
                event_id=event.id,
                status=random.choice(models.RegistrationStatus.CERTIFIABLE)
            ))
            count += 1
    db.commit()
    print(f"  Created {count} registrations")

    return {"users": num_participants + 1, "events": len(events), "registrations": count}


def main():
    parser = argparse.ArgumentParser(
        description="Seed the presence certification database with demo data"
    )
    parser.add_argument(
        "--participants", "-p",
        type=int,
        default=DEFAULT_NUM_PARTICIPANTS,
        help=f"Number of participants (default: {DEFAULT_NUM_PARTICIPANTS})"
    )
    parser.add_argument(
        "--clear", "-c",
        action="store_true",
        help="Clear existing data before seeding"
    )

    args = parser.parse_args()

    create_tables()
    db = SessionLocal()
    try:
        counts = seed_database(db, num_participants=args.participants, clear_existing=args.clear)
    except Exception as e:
        db.rollback()
        print(f"\nError during seeding: {e}")
        raise
    finally:
        db.close()

    print("\n" + "=" * 60)
    print(f"Database seeding complete: {counts}")
    print("=" * 60)


if __name__ == "__main__":
    main()
