from .models import EventMember, Match, MatchParticipant, Profile


def _results_in_order(session, profile_id, event_id=None):
    q = (
        session.query(MatchParticipant.result)
        .join(Match, MatchParticipant.match_id == Match.id)
        .filter(MatchParticipant.profile_id == profile_id)
        .filter(MatchParticipant.result.isnot(None))
    )
    if event_id is not None:
        q = q.filter(Match.event_id == event_id)
    return [r for (r,) in q.order_by(Match.created_at, Match.id).all()]


def summarize_results(results):
    """Totals and streaks for a chronological list of results."""
    wins = results.count('win')
    losses = results.count('loss')
    draws = results.count('draw')
    total = len(results)
    current = 0
    longest = 0
    for result in results:
        if result == 'win':
            current += 1
            longest = max(longest, current)
        else:
            # draws and losses both end a streak
            current = 0
    return {
        'wins': wins,
        'losses': losses,
        'draws': draws,
        'total_matches': total,
        'win_percentage': round(100.0 * wins / total, 1) if total else 0.0,
        'current_win_streak': current,
        'longest_win_streak': longest,
    }


def profile_stats(session, profile_id, event_id=None):
    return summarize_results(_results_in_order(session, profile_id, event_id))


def leaderboard(session, event_id=None):
    if event_id is None:
        profiles = (
            session.query(Profile)
            .join(MatchParticipant, MatchParticipant.profile_id == Profile.id)
            .distinct()
            .all()
        )
    else:
        profiles = (
            session.query(Profile)
            .join(EventMember, EventMember.profile_id == Profile.id)
            .filter(EventMember.event_id == event_id)
            .all()
        )
    rows = []
    for p in profiles:
        row = profile_stats(session, p.id, event_id)
        row['profile_id'] = p.id
        row['username'] = p.username
        row['display_name'] = p.display_name
        rows.append(row)
    rows.sort(key=lambda r: (-r['wins'], -r['win_percentage'], r['username']))
    return rows


def recent_matches(session, limit=20, event_id=None):
    q = session.query(Match)
    if event_id is not None:
        q = q.filter(Match.event_id == event_id)
    matches = q.order_by(Match.created_at.desc(), Match.id.desc()).limit(limit).all()
    return [m.to_dict() for m in matches]
