from .app import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import UniqueConstraint
import os
import hashlib
import json
import secrets

GAME_TYPES = ('commander', '1v1', 'two-headed-giant', 'free-for-all', 'limited')

# Event member roles: owner, admin, player, spectator. Spectators never play.
PLAYING_EVENT_ROLES = ('owner', 'admin', 'player')

# Permission keys and the roles that hold them
PERMISSIONS = {
    'matches.log': 'Log casual matches',
    'matches.delete': 'Delete recorded matches',
    'badges.award': 'Award badges manually',
    'events.create': 'Create events',
    'prizes.manage': 'Stock the prize wall',
    'tickets.adjust': 'Adjust ticket balances',
}

ROLE_PERMISSIONS = {
    'admin': {key: True for key in PERMISSIONS},
    'user': {
        'matches.log': True,
        'events.create': True,
    },
}

# Badge catalog seeded by ``flask seed-badges``; metadata holds rule parameters.
DEFAULT_BADGES = [
    {
        'slug': 'hot-hand',
        'name': 'Hot Hand',
        'description': 'Won three games in a row.',
        'icon_url': '🔥',
        'metadata': {'streak_length': 3},
    },
    {
        'slug': 'iron-man',
        'name': 'Iron Man',
        'description': 'Played ten games in a single event.',
        'icon_url': '🛡️',
        'metadata': {'min_matches': 10},
    },
    {
        'slug': 'participation',
        'name': 'Showed Up',
        'description': 'Played a game at an event.',
        'icon_url': '🎟️',
        'metadata': {},
    },
]


def generate_invite_code():
    return secrets.token_hex(3).upper()


class Profile(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(40), unique=True, nullable=False)
    display_name = db.Column(db.String(120), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='user')
    avatar_url = db.Column(db.String(500), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    password_hash = db.Column(db.Text, nullable=True)
    salt = db.Column(db.String(32), nullable=True)
    tickets = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def set_password(self, pw):
        self.salt = os.urandom(16).hex()
        self.password_hash = hashlib.sha256((self.salt + pw).encode()).hexdigest()

    def check_password(self, pw):
        if not self.password_hash or not self.salt:
            return False
        return self.password_hash == hashlib.sha256((self.salt + pw).encode()).hexdigest()

    @property
    def is_admin(self):
        return self.role == 'admin'

    def has_permission(self, key):
        return ROLE_PERMISSIONS.get(self.role, {}).get(key, False)

    def to_dict(self, include_tickets=False):
        data = {
            'id': self.id,
            'username': self.username,
            'display_name': self.display_name,
            'role': self.role,
            'avatar_url': self.avatar_url,
            'bio': self.bio,
        }
        if include_tickets:
            data['tickets'] = self.tickets or 0
        return data


class Deck(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    format = db.Column(db.String(50), nullable=False)
    commander_name = db.Column(db.String(200), nullable=True)
    colors = db.Column(db.Text, nullable=True)  # JSON list, e.g. ["W", "U"]
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owner = db.relationship(
        'Profile',
        backref=db.backref('decks', cascade='all, delete-orphan')
    )

    def colors_list(self):
        try:
            return json.loads(self.colors or '[]')
        except ValueError:
            return []

    def to_dict(self):
        return {
            'id': self.id,
            'owner_id': self.owner_id,
            'name': self.name,
            'format': self.format,
            'commander_name': self.commander_name,
            'colors': self.colors_list(),
            'description': self.description,
        }


class Event(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    owner_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    invite_code = db.Column(db.String(6), unique=True, nullable=False, default=generate_invite_code)
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    owner = db.relationship('Profile', foreign_keys=[owner_id])

    def to_dict(self, include_invite=False):
        data = {
            'id': self.id,
            'name': self.name,
            'owner_id': self.owner_id,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'is_active': bool(self.is_active),
        }
        if include_invite:
            data['invite_code'] = self.invite_code
        return data


class EventMember(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='player')
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    event = db.relationship(
        'Event',
        backref=db.backref('members', cascade='all, delete-orphan')
    )
    profile = db.relationship('Profile')

    __table_args__ = (UniqueConstraint('event_id', 'profile_id', name='_event_profile_uc'),)


class Match(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    # Bracketed play only; casual games leave both empty.
    tournament_id = db.Column(db.Integer, nullable=True)
    round_number = db.Column(db.Integer, nullable=True)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=True)
    game_type = db.Column(db.String(30), nullable=False)
    reported_by_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    event = db.relationship('Event')
    reported_by = db.relationship('Profile', foreign_keys=[reported_by_id])

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'game_type': self.game_type,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'participants': [p.to_dict() for p in self.participants],
        }


class MatchParticipant(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    deck_id = db.Column(db.Integer, db.ForeignKey('deck.id', ondelete='SET NULL'), nullable=True)
    result = db.Column(db.String(10), nullable=True)  # win, loss, draw
    games_won = db.Column(db.Integer, default=0)

    match = db.relationship(
        'Match',
        backref=db.backref('participants', cascade='all, delete-orphan')
    )
    profile = db.relationship('Profile')
    deck = db.relationship('Deck')

    __table_args__ = (UniqueConstraint('match_id', 'profile_id', name='_match_profile_uc'),)

    def to_dict(self):
        return {
            'profile_id': self.profile_id,
            'username': self.profile.username if self.profile else None,
            'deck_id': self.deck_id,
            'result': self.result,
            'games_won': self.games_won,
        }


class Badge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    icon_url = db.Column(db.String(500), nullable=True)
    category = db.Column(db.String(20), default='standard')  # standard, automated
    generated_by = db.Column(db.String(20), nullable=True)
    # ``metadata`` is reserved on declarative classes
    metadata_json = db.Column('metadata', db.Text, nullable=False, default='{}')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def metadata_dict(self):
        try:
            return json.loads(self.metadata_json or '{}')
        except ValueError:
            return {}

    def to_dict(self):
        return {
            'id': self.id,
            'slug': self.slug,
            'name': self.name,
            'description': self.description,
            'icon_url': self.icon_url,
        }


class ProfileBadge(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey('profile.id'), nullable=False)
    badge_id = db.Column(db.Integer, db.ForeignKey('badge.id'), nullable=False)
    event_id = db.Column(db.Integer, db.ForeignKey('event.id'), nullable=True)
    # event id, or 0 for global awards; NULLs never collide in a unique index
    event_scope = db.Column(db.Integer, nullable=False, default=0)
    awarded_at = db.Column(db.DateTime, default=datetime.utcnow)

    profile = db.relationship(
        'Profile',
        backref=db.backref('badges', cascade='all, delete-orphan')
    )
    badge = db.relationship('Badge')

    __table_args__ = (
        UniqueConstraint('profile_id', 'badge_id', 'event_scope', name='_profile_badge_scope_uc'),
    )

    def to_dict(self):
        data = self.badge.to_dict()
        data['event_id'] = self.event_id
        data['awarded_at'] = self.awarded_at.isoformat() if self.awarded_at else None
        return data


class Prize(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    image_url = db.Column(db.String(500), nullable=True)
    cost = db.Column(db.Integer, nullable=False)  # tickets
    stock = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'image_url': self.image_url,
            'cost': self.cost,
            'stock': self.stock,
        }


class SiteLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    profile_id = db.Column(db.Integer, nullable=True)
    # no relationship: profiles live in the main database


class EventLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, nullable=False)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    profile_id = db.Column(db.Integer, nullable=True)


def log_site(session, action, result, error=None, profile_id=None):
    session.add(SiteLog(action=action, result=result, error=error, profile_id=profile_id))
    session.commit()


def log_event(session, event_id, action, result, error=None, profile_id=None):
    session.add(EventLog(event_id=event_id, action=action, result=result, error=error,
                         profile_id=profile_id))
    session.commit()
