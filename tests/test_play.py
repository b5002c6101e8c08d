import pytest
from sqlalchemy.exc import SQLAlchemyError

from playgroup import play
from playgroup.models import (
    Deck,
    Event,
    EventMember,
    Match,
    MatchParticipant,
    ProfileBadge,
    SiteLog,
)
from playgroup.play import delete_match, log_casual_match, parse_submission
from playgroup.revalidate import path_revalidated


def submission(profile_ids, winners, fmt='commander', deck_ids=None, event_id=None):
    return {
        'format': fmt,
        'profile_ids': [p.id for p in profile_ids],
        'winner_profile_ids': [p.id for p in winners],
        'deck_ids': deck_ids or {},
        'event_id': event_id,
    }


@pytest.fixture
def players(make_profile):
    return [make_profile(name) for name in ('alice', 'bob', 'carol')]


def test_commander_pod_recorded(session, players):
    alice, bob, carol = players
    deck = Deck(owner_id=alice.id, name='Superfriends', format='commander')
    session.add(deck)
    session.commit()

    result = log_casual_match(
        session, alice, submission(players, [alice], deck_ids={alice.id: deck.id})
    )

    assert result['success'] is True
    match = session.get(Match, result['match_id'])
    assert match.game_type == 'commander'
    assert match.tournament_id is None
    assert match.round_number is None
    assert match.reported_by_id == alice.id
    rows = {p.profile_id: p for p in match.participants}
    assert set(rows) == {alice.id, bob.id, carol.id}
    assert (rows[alice.id].result, rows[alice.id].games_won, rows[alice.id].deck_id) == ('win', 1, deck.id)
    for loser in (bob, carol):
        assert (rows[loser.id].result, rows[loser.id].games_won, rows[loser.id].deck_id) == ('loss', 0, None)


@pytest.mark.parametrize(
    ('build', 'message'),
    [
        (lambda a, b, c: submission([a], [a]), 'At least two players are required.'),
        (lambda a, b, c: submission([], [a]), 'At least two players are required.'),
        (lambda a, b, c: submission([a, b], []), 'At least one winner is required.'),
        (lambda a, b, c: submission([a, a], [a]), 'Each player can only appear once.'),
        (lambda a, b, c: submission([a, b], [c]), 'Winners must be players in the match.'),
        (lambda a, b, c: submission([a, b], [a], fmt='poker'), 'Unknown game format.'),
    ],
)
def test_invalid_submissions_write_nothing(session, players, build, message):
    result = log_casual_match(session, players[0], build(*players))
    assert result == {'success': False, 'message': message}
    assert session.query(Match).count() == 0
    assert session.query(MatchParticipant).count() == 0
    assert session.query(SiteLog).count() == 0


def test_unknown_player_rejected(session, players):
    data = submission(players[:2], players[:1])
    data['profile_ids'].append(4242)
    result = log_casual_match(session, players[0], data)
    assert result['message'] == 'Unknown player.'
    assert session.query(Match).count() == 0


def test_deck_must_belong_to_its_player(session, players):
    alice, bob, carol = players
    deck = Deck(owner_id=bob.id, name='Borrowed', format='commander')
    session.add(deck)
    session.commit()

    result = log_casual_match(session, alice, submission(players, [alice], deck_ids={alice.id: deck.id}))
    assert result['message'] == 'Invalid deck selection.'

    outsider = submission(players[:2], [alice], deck_ids={carol.id: deck.id})
    assert log_casual_match(session, alice, outsider)['message'] == 'Invalid deck selection.'
    assert session.query(Match).count() == 0


def test_event_match_requires_playing_members(session, players):
    alice, bob, carol = players
    event = Event(name='League Night', owner_id=alice.id)
    session.add(event)
    session.commit()
    session.add_all([
        EventMember(event_id=event.id, profile_id=alice.id, role='owner'),
        EventMember(event_id=event.id, profile_id=bob.id, role='player'),
        EventMember(event_id=event.id, profile_id=carol.id, role='spectator'),
    ])
    session.commit()

    result = log_casual_match(session, alice, submission(players, [alice], event_id=event.id))
    assert result['message'] == 'All players must be members of the event.'

    result = log_casual_match(session, alice, submission([alice, bob], [bob], event_id=event.id))
    assert result['success'] is True
    assert session.get(Match, result['match_id']).event_id == event.id
    # first event game earns the winner the event participation badge
    assert [b['slug'] for b in result['awarded_badges']] == ['participation']
    assert result['awarded_badges'][0]['profile_id'] == bob.id


def test_inactive_or_missing_event_rejected(session, players):
    alice, bob, _ = players
    event = Event(name='Closed', owner_id=alice.id, is_active=False)
    session.add(event)
    session.commit()
    assert log_casual_match(session, alice, submission([alice, bob], [alice], event_id=event.id))['message'] == 'Event not found.'
    assert log_casual_match(session, alice, submission([alice, bob], [alice], event_id=999))['message'] == 'Event not found.'


def test_hot_hand_awarded_on_third_win_only(session, players):
    alice, bob, carol = players
    awarded = []
    for _ in range(4):
        result = log_casual_match(session, alice, submission(players, [alice], fmt='free-for-all'))
        assert result['success']
        awarded.append([b['slug'] for b in result['awarded_badges']])
    assert awarded == [[], [], ['hot-hand'], []]
    assert session.query(ProfileBadge).filter_by(profile_id=alice.id).count() == 1


def test_commander_badge_for_winning_deck(session, players):
    alice, bob, _ = players
    deck = Deck(owner_id=alice.id, name='Dragons', format='commander',
                commander_name='The Ur-Dragon')
    session.add(deck)
    session.commit()

    result = log_casual_match(session, alice, submission([alice, bob], [alice], deck_ids={alice.id: deck.id}))
    assert [b['slug'] for b in result['awarded_badges']] == ['cmd-the-ur-dragon']

    again = log_casual_match(session, alice, submission([alice, bob], [alice], deck_ids={alice.id: deck.id}))
    assert again['awarded_badges'] == []


def test_badge_failure_is_isolated_per_winner(session, players, monkeypatch):
    alice, bob, carol = players
    evaluated = []
    real_check = play.check_and_award_badges

    def flaky_check(session_, profile_id, event_id=None):
        evaluated.append(profile_id)
        if profile_id == alice.id:
            raise RuntimeError('rule exploded')
        return real_check(session_, profile_id, event_id)

    monkeypatch.setattr(play, 'check_and_award_badges', flaky_check)

    result = log_casual_match(session, alice, submission(players, [alice, bob], fmt='two-headed-giant'))

    assert result['success'] is True
    assert evaluated == [alice.id, bob.id]
    match = session.get(Match, result['match_id'])
    assert len(match.participants) == 3
    failure = session.query(SiteLog).filter_by(action='badge_check', result='failure').one()
    assert 'rule exploded' in failure.error
    assert f'profile_id={alice.id}' in failure.error


def test_persistence_failure_leaves_no_partial_match(session, players, monkeypatch):
    real_commit = session.commit
    calls = []

    def failing_first_commit():
        calls.append(1)
        if len(calls) == 1:
            raise SQLAlchemyError('database unavailable')
        return real_commit()

    monkeypatch.setattr(session, 'commit', failing_first_commit)

    result = log_casual_match(session, players[0], submission(players, players[:1]))

    assert result == {'success': False, 'message': 'Failed to record match.'}
    assert session.query(Match).count() == 0
    assert session.query(MatchParticipant).count() == 0
    log = session.query(SiteLog).filter_by(action='log_casual_match').one()
    assert log.result == 'failure'
    assert 'database unavailable' in log.error


def test_unexpected_error_becomes_failure_result(session, players, monkeypatch):
    def broken(session_, data):
        raise RuntimeError('boom')

    monkeypatch.setattr(play, 'validate_submission', broken)
    result = log_casual_match(session, players[0], submission(players, players[:1]))
    assert result == {'success': False, 'message': 'boom'}


def test_views_revalidated_after_match(session, players):
    alice, bob, _ = players
    event = Event(name='Cube Night', owner_id=alice.id)
    session.add(event)
    session.commit()
    session.add_all([
        EventMember(event_id=event.id, profile_id=alice.id, role='owner'),
        EventMember(event_id=event.id, profile_id=bob.id, role='player'),
    ])
    session.commit()

    paths = []

    def receiver(sender, path, **extra):
        paths.append(path)

    with path_revalidated.connected_to(receiver):
        log_casual_match(session, alice, submission([alice, bob], [alice], fmt='limited', event_id=event.id))
        log_casual_match(session, alice, submission([alice], [alice]))

    assert paths == ['/', '/stats', f'/events/{event.id}']


def test_delete_match_cascades_to_participants(session, players):
    result = log_casual_match(session, players[0], submission(players, players[:1]))
    assert delete_match(session, result['match_id']) is True
    assert session.query(Match).count() == 0
    assert session.query(MatchParticipant).count() == 0
    assert delete_match(session, result['match_id']) is False


def test_parse_submission_normalizes_form_values():
    data = parse_submission({
        'format': ' Commander ',
        'profile_ids': '1,2, 3',
        'winner_profile_ids': ['2'],
        'deck_ids': {'1': '7', '2': '', '3': None},
        'event_id': '',
    })
    assert data == {
        'format': 'commander',
        'profile_ids': [1, 2, 3],
        'winner_profile_ids': [2],
        'deck_ids': {1: 7},
        'event_id': None,
    }
    with pytest.raises(ValueError):
        parse_submission({'profile_ids': 'a,b'})


def test_event_view_refreshed_after_badge_awards(client, session, players, monkeypatch):
    alice, bob, _ = players
    event = Event(name='Pauper League', owner_id=alice.id)
    session.add(event)
    session.commit()
    session.add_all([
        EventMember(event_id=event.id, profile_id=alice.id, role='owner'),
        EventMember(event_id=event.id, profile_id=bob.id, role='player'),
    ])
    session.commit()
    event_id = event.id
    real_check = play.check_and_award_badges

    def render_then_check(session_, profile_id, event_id=None):
        # a page render landing between the match commit and the awards
        assert client.get(f'/events/{event_id}').get_json()['trophies'] == []
        return real_check(session_, profile_id, event_id)

    monkeypatch.setattr(play, 'check_and_award_badges', render_then_check)

    result = log_casual_match(session, alice, submission([alice, bob], [alice], fmt='limited', event_id=event_id))

    assert [b['slug'] for b in result['awarded_badges']] == ['participation']
    page = client.get(f'/events/{event_id}').get_json()
    assert [t['slug'] for t in page['trophies']] == ['participation']
