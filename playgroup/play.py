from sqlalchemy.exc import SQLAlchemyError

from .badges import check_and_award_badges, check_and_award_commander_badge
from .models import (
    GAME_TYPES,
    PLAYING_EVENT_ROLES,
    Deck,
    Event,
    EventMember,
    Match,
    MatchParticipant,
    Profile,
    log_event,
    log_site,
)
from .revalidate import revalidate_path


def _failure(message):
    return {'success': False, 'message': message}


def _int_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        value = [part for part in value.split(',') if part.strip()]
    return [int(v) for v in value]


def parse_submission(payload):
    """Normalize a JSON or form payload into a casual match submission.

    Ids arrive as strings from forms; ``deck_ids`` entries without a deck are
    dropped.  Raises ``ValueError`` on ids that are not integers.
    """
    deck_ids = {}
    for profile_id, deck_id in (payload.get('deck_ids') or {}).items():
        if deck_id in (None, ''):
            continue
        deck_ids[int(profile_id)] = int(deck_id)
    event_id = payload.get('event_id')
    return {
        'format': (payload.get('format') or '').strip().lower(),
        'profile_ids': _int_list(payload.get('profile_ids')),
        'winner_profile_ids': _int_list(payload.get('winner_profile_ids')),
        'deck_ids': deck_ids,
        'event_id': int(event_id) if event_id not in (None, '') else None,
    }


def validate_submission(session, data):
    """Return a user-facing error message, or None if the submission is valid."""
    profile_ids = data['profile_ids']
    winners = data['winner_profile_ids']
    if len(profile_ids) < 2:
        return 'At least two players are required.'
    if not winners:
        return 'At least one winner is required.'
    if len(set(profile_ids)) != len(profile_ids):
        return 'Each player can only appear once.'
    if not set(winners) <= set(profile_ids):
        return 'Winners must be players in the match.'
    if data['format'] not in GAME_TYPES:
        return 'Unknown game format.'
    known = session.query(Profile.id).filter(Profile.id.in_(profile_ids)).count()
    if known != len(profile_ids):
        return 'Unknown player.'

    event_id = data.get('event_id')
    if event_id is not None:
        event = session.get(Event, event_id)
        if event is None or not event.is_active:
            return 'Event not found.'
        members = (
            session.query(EventMember.profile_id)
            .filter(EventMember.event_id == event_id)
            .filter(EventMember.role.in_(PLAYING_EVENT_ROLES))
            .filter(EventMember.profile_id.in_(profile_ids))
            .count()
        )
        if members != len(profile_ids):
            return 'All players must be members of the event.'

    for profile_id, deck_id in data['deck_ids'].items():
        if profile_id not in profile_ids:
            return 'Invalid deck selection.'
        deck = session.get(Deck, deck_id)
        if deck is None or deck.owner_id != profile_id:
            return 'Invalid deck selection.'
    return None


def _revalidate_match_views(event_id):
    revalidate_path('/')
    revalidate_path('/stats')
    if event_id is not None:
        revalidate_path(f'/events/{event_id}')


def _award_for_winner(session, profile_id, deck_id, event_id):
    badges = list(check_and_award_badges(session, profile_id, event_id))
    if deck_id:
        badge = check_and_award_commander_badge(session, profile_id, deck_id, event_id)
        if badge is not None:
            badges.append(badge)
    return badges


def log_casual_match(session, actor, data):
    """Record a casual game and award badges to its winners.

    ``actor`` is the reporting profile (or None) and ``data`` a submission as
    returned by :func:`parse_submission`.  The match and its participants are
    committed together; badge awards are committed per winner afterwards, and a
    winner whose evaluation fails is logged and skipped.
    """
    actor_id = actor.id if actor is not None else None
    try:
        message = validate_submission(session, data)
        if message:
            return _failure(message)

        event_id = data.get('event_id')
        winners = list(dict.fromkeys(data['winner_profile_ids']))
        try:
            match = Match(
                tournament_id=None,
                round_number=None,
                event_id=event_id,
                game_type=data['format'],
                reported_by_id=actor_id,
            )
            session.add(match)
            for profile_id in data['profile_ids']:
                won = profile_id in winners
                session.add(MatchParticipant(
                    match=match,
                    profile_id=profile_id,
                    deck_id=data['deck_ids'].get(profile_id),
                    result='win' if won else 'loss',
                    games_won=1 if won else 0,
                ))
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            log_site(session, 'log_casual_match', 'failure', str(exc), actor_id)
            return _failure('Failed to record match.')

        match_id = match.id
        log_site(session, 'log_casual_match', 'success', f'match_id={match_id}', actor_id)
        if event_id is not None:
            log_event(session, event_id, 'match', 'success', f'match_id={match_id}', actor_id)

        awarded = []
        for profile_id in winners:
            try:
                badges = _award_for_winner(session, profile_id, data['deck_ids'].get(profile_id), event_id)
                session.commit()
            except Exception as exc:
                session.rollback()
                log_site(session, 'badge_check', 'failure', f'profile_id={profile_id}: {exc}', actor_id)
                continue
            for badge in badges:
                awarded.append(dict(badge.to_dict(), profile_id=profile_id))

        _revalidate_match_views(event_id)
        return {'success': True, 'match_id': match_id, 'awarded_badges': awarded}
    except Exception as exc:
        session.rollback()
        log_site(session, 'log_casual_match', 'failure', str(exc), actor_id)
        return _failure(str(exc) or 'An unexpected error occurred.')


def delete_match(session, match_id):
    match = session.get(Match, match_id)
    if match is None:
        return False
    event_id = match.event_id
    session.delete(match)
    session.commit()
    _revalidate_match_views(event_id)
    return True
