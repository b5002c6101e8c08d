#!/usr/bin/env python
"""Populate the development database with a small demo playgroup."""
from __future__ import annotations

import argparse
import json
from typing import Sequence

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from playgroup.app import create_app, db
from playgroup import models
from playgroup.badges import seed_default_badges
from playgroup.play import log_casual_match
from playgroup.shop import stock_prize


def ensure_admin() -> models.Profile:
    admin = models.Profile.query.filter_by(username="admin").first()
    if admin is None:
        admin = models.Profile(username="admin", display_name="Admin", role="admin")
        admin.set_password("admin123")
        db.session.add(admin)
        db.session.commit()
    return admin


def create_profile(username: str, display_name: str, password: str = "player123") -> models.Profile:
    profile = models.Profile.query.filter_by(username=username).first()
    if profile is None:
        profile = models.Profile(username=username, display_name=display_name)
        profile.set_password(password)
        db.session.add(profile)
    return profile


def ensure_deck(owner: models.Profile, name: str, commander: str | None, colors: Sequence[str]) -> models.Deck:
    deck = models.Deck.query.filter_by(owner_id=owner.id, name=name).first()
    if deck is None:
        deck = models.Deck(
            owner=owner,
            name=name,
            format="commander" if commander else "1v1",
            commander_name=commander,
            colors=json.dumps(list(colors)),
        )
        db.session.add(deck)
    return deck


def ensure_event(owner: models.Profile, name: str, players: Sequence[models.Profile]) -> models.Event:
    event = models.Event.query.filter_by(name=name).first()
    if event is None:
        event = models.Event(name=name, owner=owner)
        db.session.add(event)
        db.session.commit()
    for profile in [owner, *players]:
        member = models.EventMember.query.filter_by(event_id=event.id, profile_id=profile.id).first()
        if member is None:
            role = "owner" if profile is owner else "player"
            db.session.add(models.EventMember(event_id=event.id, profile_id=profile.id, role=role))
    db.session.commit()
    return event


def build_sample_world(reset: bool = False) -> None:
    if reset:
        db.drop_all()
        db.create_all()
    seed_default_badges(db.session)
    admin = ensure_admin()

    player_details = [
        ("lena", "Lena Hart"),
        ("noah", "Noah Kim"),
        ("eli", "Eli Turner"),
        ("zara", "Zara Brooks"),
        ("theo", "Theo White"),
        ("maya", "Maya Singh"),
    ]
    players = [create_profile(username, name) for username, name in player_details]
    db.session.commit()

    lena, noah, eli, zara, theo, maya = players
    decks = {
        lena.id: ensure_deck(lena, "Dragon Tribal", "The Ur-Dragon", "WUBRG"),
        noah.id: ensure_deck(noah, "Superfriends", "Atraxa, Praetors' Voice", "WUBG"),
        eli.id: ensure_deck(eli, "Goblins", "Krenko, Mob Boss", "R"),
        zara.id: ensure_deck(zara, "Mono Green Stompy", None, "G"),
    }
    db.session.commit()

    event = ensure_event(lena, "Friday Commander", players[:4])

    if models.Match.query.count() == 0:
        pods = [
            ([lena, noah, eli, zara], [lena], event.id),
            ([lena, noah, eli], [lena], event.id),
            ([lena, eli, zara], [lena], event.id),
            ([noah, theo], [noah], None),
            ([theo, maya], [maya], None),
        ]
        for seats, winners, event_id in pods:
            result = log_casual_match(db.session, admin, {
                "format": "commander" if event_id else "1v1",
                "profile_ids": [p.id for p in seats],
                "winner_profile_ids": [p.id for p in winners],
                "deck_ids": {p.id: decks[p.id].id for p in seats if p.id in decks and event_id},
                "event_id": event_id,
            })
            if not result["success"]:
                print(f"Could not record demo match: {result['message']}")

    if models.Prize.query.count() == 0:
        stock_prize(db.session, "Deck Box", 3, stock=4)
        stock_prize(db.session, "Playmat", 8, stock=2)
        stock_prize(db.session, "Foil Sol Ring", 25, stock=1)
        for profile in players[:4]:
            profile.tickets = 5
        db.session.commit()

    print("Database populated with demo content.")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="drop and recreate the database before loading data")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        build_sample_world(reset=args.reset)


if __name__ == "__main__":
    main()
