"""Badge rules and awarding.

Every rule is keyed by the slug of the catalog badge it awards and only runs
when that badge exists.  Awards go through a conditional insert on the
``(profile_id, badge_id, event_scope)`` unique constraint, so evaluating the
same history twice, or from two requests at once, never writes a second row.
"""

import json
import re
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .models import DEFAULT_BADGES, Badge, Deck, Match, MatchParticipant, ProfileBadge

_CONFLICT_INSERTS = {
    'sqlite': sqlite_insert,
    'postgresql': postgresql_insert,
}


def slugify(text):
    text = str(text).lower().strip()
    text = re.sub(r'\s+', '-', text)
    text = re.sub(r'[^\w\-]+', '', text)
    return re.sub(r'-{2,}', '-', text).strip('-')


def _scope(event_id):
    return event_id if event_id is not None else 0


def _conflict_insert(session, model):
    dialect = session.get_bind(model).dialect.name
    if dialect not in _CONFLICT_INSERTS:
        raise RuntimeError(f'Conditional inserts are not supported on {dialect}')
    return _CONFLICT_INSERTS[dialect](model.__table__)


def _history(session, profile_id, event_id=None):
    """Reported results for a profile, newest first."""
    q = (
        session.query(MatchParticipant.result)
        .join(Match, MatchParticipant.match_id == Match.id)
        .filter(MatchParticipant.profile_id == profile_id)
        .filter(MatchParticipant.result.isnot(None))
    )
    if event_id is not None:
        q = q.filter(Match.event_id == event_id)
    return q.order_by(Match.created_at.desc(), Match.id.desc())


# --- Rules: (session, profile_id, event_id, params) -> bool ---

def _hot_hand(session, profile_id, event_id, params):
    streak = int(params.get('streak_length', 3))
    results = [r for (r,) in _history(session, profile_id, event_id).limit(streak).all()]
    return len(results) == streak and all(r == 'win' for r in results)


def _iron_man(session, profile_id, event_id, params):
    if event_id is None:
        return False
    return _history(session, profile_id, event_id).count() >= int(params.get('min_matches', 10))


def _participation(session, profile_id, event_id, params):
    if event_id is None:
        return False
    return _history(session, profile_id, event_id).first() is not None


BADGE_RULES = {
    'hot-hand': _hot_hand,
    'iron-man': _iron_man,
    'participation': _participation,
}


def has_badge(session, profile_id, badge, event_id=None):
    q = session.query(ProfileBadge.id).filter_by(
        profile_id=profile_id,
        badge_id=badge.id,
        event_scope=_scope(event_id),
    )
    return session.query(q.exists()).scalar()


def award_badge(session, profile_id, badge, event_id=None):
    """Insert the award unless it already exists; True if a row was written."""
    stmt = _conflict_insert(session, ProfileBadge).values(
        profile_id=profile_id,
        badge_id=badge.id,
        event_id=event_id,
        event_scope=_scope(event_id),
        awarded_at=datetime.utcnow(),
    ).on_conflict_do_nothing(index_elements=['profile_id', 'badge_id', 'event_scope'])
    return session.execute(stmt).rowcount == 1


def check_and_award_badges(session, profile_id, event_id=None):
    """Run every standard rule for ``profile_id`` and return the new badges.

    Awards are scoped to ``event_id`` when given, global otherwise.  The caller
    owns the transaction; nothing is committed here and errors propagate.
    """
    awarded = []
    catalog = {
        b.slug: b
        for b in session.query(Badge).filter(Badge.slug.in_(list(BADGE_RULES))).all()
    }
    for slug, rule in BADGE_RULES.items():
        badge = catalog.get(slug)
        if badge is None:
            continue
        if has_badge(session, profile_id, badge, event_id):
            continue
        if not rule(session, profile_id, event_id, badge.metadata_dict()):
            continue
        if award_badge(session, profile_id, badge, event_id):
            awarded.append(badge)
    return awarded


def ensure_commander_badge(session, commander_name):
    """Return the automated badge for ``commander_name``, creating it if needed.

    Badges are matched on the commander name stored in their metadata.  A
    different commander whose name slugifies the same way gets a numbered slug.
    """
    base = slugify(commander_name)
    if not base:
        raise ValueError(f'Commander name {commander_name!r} has no usable slug')
    base = f'cmd-{base}'
    candidates = (
        session.query(Badge)
        .filter(or_(Badge.slug == base, Badge.slug.like(f'{base}-%')))
        .order_by(Badge.id)
        .all()
    )
    taken = set()
    for badge in candidates:
        if badge.metadata_dict().get('commander_name') == commander_name:
            return badge
        taken.add(badge.slug)
    slug, n = base, 2
    while slug in taken:
        slug = f'{base}-{n}'
        n += 1
    # Two winners with the same new commander may race here; the slug is unique.
    stmt = _conflict_insert(session, Badge).values({
        'slug': slug,
        'name': f'{commander_name} Champion',
        'description': f'Won a game piloting {commander_name}.',
        'icon_url': '🏆',
        'category': 'automated',
        'generated_by': 'system',
        'metadata': json.dumps({'commander_name': commander_name}),
        'created_at': datetime.utcnow(),
    }).on_conflict_do_nothing(index_elements=['slug'])
    session.execute(stmt)
    badge = session.query(Badge).filter_by(slug=slug).one()
    if badge.metadata_dict().get('commander_name') != commander_name:
        # lost the slug to another commander; the next pass skips it
        return ensure_commander_badge(session, commander_name)
    return badge


def check_and_award_commander_badge(session, profile_id, deck_id, event_id=None):
    """Award the badge for the commander of ``deck_id`` on first win with it.

    Commander badges are always global, whatever ``event_id`` is.
    """
    if not deck_id:
        return None
    deck = session.get(Deck, deck_id)
    if deck is None or not slugify((deck.commander_name or '').strip()):
        return None
    badge = ensure_commander_badge(session, deck.commander_name.strip())
    if has_badge(session, profile_id, badge):
        return None
    if award_badge(session, profile_id, badge):
        return badge
    return None


def seed_default_badges(session):
    created = 0
    for entry in DEFAULT_BADGES:
        if session.query(Badge).filter_by(slug=entry['slug']).first():
            continue
        session.add(Badge(
            slug=entry['slug'],
            name=entry['name'],
            description=entry['description'],
            icon_url=entry['icon_url'],
            category='standard',
            metadata_json=json.dumps(entry['metadata']),
        ))
        created += 1
    session.commit()
    return created
