from flask import (
    Flask,
    request,
    abort,
)
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from datetime import date
import os
import re
import json
import click

from sqlalchemy.exc import SQLAlchemyError

from .revalidate import cached_view, init_view_cache, revalidate_path


db = SQLAlchemy()
login_manager = LoginManager()

USERNAME_RE = re.compile(r'^[a-z0-9_]{3,40}$')


def create_app():
    app = Flask(__name__)
    db_file = os.environ.get('PLAYGROUP_DB_PATH', 'playgroup.db')
    log_db_file = os.environ.get('PLAYGROUP_LOG_DB_PATH', db_file.replace('.db', '_logs.db'))
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_file}'
    app.config['SQLALCHEMY_BINDS'] = {
        'logs': f'sqlite:///{log_db_file}',
    }
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET', 'dev-secret-change-me')
    app.config['VIEW_CACHE_ENABLED'] = os.environ.get('PLAYGROUP_VIEW_CACHE', '1') != '0'
    os.makedirs(app.instance_path, exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)
    init_view_cache(app)

    from .models import (
        Profile,
        Deck,
        Event,
        EventMember,
        Match,
        MatchParticipant,
        Badge,
        ProfileBadge,
        SiteLog,
        Prize,
        generate_invite_code,
        log_site as _log_site,
        log_event as _log_event,
    )
    from .badges import award_badge, seed_default_badges
    from .play import delete_match, log_casual_match, parse_submission
    from .shop import adjust_tickets, purchase_prize, stock_prize
    from .stats import leaderboard, profile_stats, recent_matches

    with app.app_context():
        db.create_all()

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(Profile, int(user_id))

    # ---------- CLI ----------
    @app.cli.command('db-init')
    def db_init():
        db.create_all()
        created = seed_default_badges(db.session)
        if not db.session.query(Profile).filter_by(username='admin').first():
            admin = Profile(username='admin', display_name='Admin', role='admin')
            admin.set_password('admin123')
            db.session.add(admin)
            db.session.commit()
            click.echo("Created default admin: admin / admin123")
        click.echo(f"Database initialized ({created} badges seeded).")

    @app.cli.command('seed-badges')
    def seed_badges():
        created = seed_default_badges(db.session)
        click.echo(f"Seeded {created} badges.")

    @app.cli.command('create-admin')
    @click.option('--username', help='Username for the admin profile')
    @click.option('--password', help='Password for the admin profile')
    def create_admin(username, password):
        if not username:
            username = click.prompt("Admin username", default="admin")
        if not password:
            password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
        if db.session.query(Profile).filter_by(username=username).first():
            click.echo("Profile exists")
            return
        admin = Profile(username=username, display_name="Admin", role='admin')
        admin.set_password(password)
        db.session.add(admin)
        db.session.commit()
        click.echo("Admin created.")

    # ---------- Helpers ----------
    def actor_id():
        return current_user.id if current_user.is_authenticated else None

    def log_site(action, result, error=None):
        _log_site(db.session, action, result, error, actor_id())

    def log_event(eid, action, result, error=None):
        _log_event(db.session, eid, action, result, error, actor_id())

    def require_permission(perm):
        if not current_user.is_authenticated or not current_user.has_permission(perm):
            log_site('unauthorized_access', 'failure', perm)
            abort(403)

    def require_admin():
        if not current_user.is_authenticated or not current_user.is_admin:
            log_site('unauthorized_access', 'failure', 'admin')
            abort(403)

    def payload():
        data = request.get_json(silent=True)
        if data is not None:
            return data
        return request.form.to_dict()

    def parse_date(value):
        if not value:
            return None
        return date.fromisoformat(value.strip())

    def failure(message, status=400):
        return {'success': False, 'message': message}, status

    def revalidate_public_views(event_ids=()):
        revalidate_path('/')
        revalidate_path('/stats')
        for eid in event_ids:
            if eid is not None:
                revalidate_path(f'/events/{eid}')

    # ---------- Routes ----------
    @app.route('/')
    @cached_view
    def index():
        return {'matches': recent_matches(db.session)}

    @app.route('/onboarding', methods=['POST'])
    def onboarding():
        data = payload()
        username = (data.get('username') or '').strip().lower()
        password = data.get('password') or ''
        if not USERNAME_RE.match(username):
            return failure('Username must be 3-40 lowercase letters, digits or underscores.')
        if len(password) < 6:
            return failure('Password must be at least 6 characters.')
        if db.session.query(Profile).filter_by(username=username).first():
            log_site('onboarding', 'failure', 'username taken')
            return failure('Username already taken.')
        profile = Profile(
            username=username,
            display_name=(data.get('display_name') or '').strip() or username,
            role='user',
        )
        profile.set_password(password)
        db.session.add(profile)
        db.session.commit()
        login_user(profile)
        log_site('onboarding', 'success')
        return {'success': True, 'profile': profile.to_dict(include_tickets=True)}, 201

    @app.route('/login', methods=['POST'])
    def login():
        data = payload()
        username = (data.get('username') or '').strip().lower()
        profile = db.session.query(Profile).filter_by(username=username).first()
        if profile and profile.check_password(data.get('password') or ''):
            login_user(profile)
            log_site('login', 'success')
            return {'success': True, 'profile': profile.to_dict(include_tickets=True)}
        log_site('login', 'failure', 'invalid credentials')
        return failure('Invalid credentials', 401)

    @app.route('/logout', methods=['POST'])
    @login_required
    def logout():
        log_site('logout', 'success')
        logout_user()
        return {'success': True}

    @app.route('/profile', methods=['GET', 'POST'])
    @login_required
    def my_profile():
        if request.method == 'POST':
            data = payload()
            profile = current_user._get_current_object()
            for field in ('display_name', 'bio', 'avatar_url'):
                if field in data:
                    value = (data.get(field) or '').strip()
                    setattr(profile, field, value or None)
            db.session.commit()
            log_site('profile_update', 'success')
            memberships = db.session.query(EventMember.event_id).filter_by(profile_id=profile.id).all()
            revalidate_public_views(eid for (eid,) in memberships)
        return {'profile': current_user.to_dict(include_tickets=True)}

    @app.route('/players/<int:pid>')
    def view_player(pid):
        profile = db.session.get(Profile, pid)
        if not profile: abort(404)
        trophies = (
            db.session.query(ProfileBadge)
            .filter_by(profile_id=pid)
            .order_by(ProfileBadge.awarded_at.desc())
            .all()
        )
        return {
            'profile': profile.to_dict(),
            'stats': profile_stats(db.session, pid),
            'badges': [pb.to_dict() for pb in trophies],
            'decks': [d.to_dict() for d in profile.decks],
        }

    # ---------- Decks ----------
    def deck_fields(data):
        name = (data.get('name') or '').strip()
        fmt = (data.get('format') or '').strip()
        if not name or not fmt:
            return None
        colors = data.get('colors') or []
        if isinstance(colors, str):
            colors = [c.strip().upper() for c in colors.split(',') if c.strip()]
        return {
            'name': name,
            'format': fmt,
            'commander_name': (data.get('commander_name') or '').strip() or None,
            'colors': json.dumps(colors) if colors else None,
            'description': (data.get('description') or '').strip() or None,
        }

    @app.route('/decks', methods=['GET', 'POST'])
    @login_required
    def decks():
        if request.method == 'POST':
            fields = deck_fields(payload())
            if fields is None:
                return failure('Name and Format are required.')
            deck = Deck(owner_id=current_user.id, **fields)
            db.session.add(deck)
            db.session.commit()
            log_site('deck_create', 'success', f'deck_id={deck.id}')
            return {'success': True, 'deck': deck.to_dict()}, 201
        own = db.session.query(Deck).filter_by(owner_id=current_user.id).order_by(Deck.name).all()
        return {'decks': [d.to_dict() for d in own]}

    @app.route('/decks/<int:did>', methods=['POST'])
    @login_required
    def update_deck(did):
        fields = deck_fields(payload())
        if fields is None:
            return failure('Name and Format are required.')
        # owner-scoped; someone else's deck looks the same as a missing one
        deck = db.session.query(Deck).filter_by(id=did, owner_id=current_user.id).first()
        if not deck: abort(404)
        for key, value in fields.items():
            setattr(deck, key, value)
        db.session.commit()
        log_site('deck_update', 'success', f'deck_id={did}')
        return {'success': True, 'deck': deck.to_dict()}

    @app.route('/decks/<int:did>/delete', methods=['POST'])
    @login_required
    def delete_deck(did):
        deck = db.session.get(Deck, did)
        if not deck: abort(404)
        if deck.owner_id != current_user.id:
            abort(403)
        touched = (
            db.session.query(Match.event_id)
            .join(MatchParticipant, MatchParticipant.match_id == Match.id)
            .filter(MatchParticipant.deck_id == did)
            .distinct()
            .all()
        )
        # keep match history, forget the deck
        db.session.query(MatchParticipant).filter_by(deck_id=did).update({'deck_id': None})
        db.session.delete(deck)
        db.session.commit()
        log_site('deck_delete', 'success', f'deck_id={did}')
        revalidate_public_views(eid for (eid,) in touched)
        return {'success': True}

    # ---------- Events ----------
    @app.route('/events', methods=['GET', 'POST'])
    @login_required
    def events():
        if request.method == 'POST':
            require_permission('events.create')
            data = payload()
            name = (data.get('name') or '').strip()
            if not name:
                return failure('Event name is required.')
            try:
                start_date = parse_date(data.get('start_date'))
                end_date = parse_date(data.get('end_date'))
            except ValueError:
                return failure('Invalid date format.')
            if start_date and end_date and end_date < start_date:
                return failure('Event cannot end before it starts.')
            code = generate_invite_code()
            while db.session.query(Event).filter_by(invite_code=code).first():
                code = generate_invite_code()
            try:
                event = Event(name=name, owner_id=current_user.id, invite_code=code,
                              start_date=start_date, end_date=end_date, is_active=True)
                db.session.add(event)
                db.session.add(EventMember(event=event, profile_id=current_user.id, role='owner'))
                db.session.commit()
            except SQLAlchemyError as e:
                db.session.rollback()
                log_site('event_create', 'failure', str(e))
                return failure('Failed to create event.', 500)
            log_site('event_create', 'success')
            log_event(event.id, 'create', 'success')
            revalidate_path('/')
            return {'success': True, 'event': event.to_dict(include_invite=True)}, 201
        memberships = (
            db.session.query(EventMember)
            .filter_by(profile_id=current_user.id)
            .order_by(EventMember.joined_at.desc())
            .all()
        )
        return {'events': [
            dict(m.event.to_dict(include_invite=m.role in ('owner', 'admin')), role=m.role)
            for m in memberships
        ]}

    @app.route('/events/join', methods=['POST'])
    @login_required
    def join_event():
        code = (payload().get('invite_code') or '').strip().upper()
        event = db.session.query(Event).filter_by(invite_code=code).first() if code else None
        if not event or not event.is_active:
            log_site('join_event', 'failure', 'invalid invite code')
            return failure('Invalid invite code')
        existing = db.session.query(EventMember).filter_by(
            event_id=event.id, profile_id=current_user.id
        ).first()
        if existing:
            log_event(event.id, 'join', 'already joined')
            return {'success': True, 'event_id': event.id, 'message': 'Already joined'}
        db.session.add(EventMember(event_id=event.id, profile_id=current_user.id, role='player'))
        db.session.commit()
        log_event(event.id, 'join', 'success')
        revalidate_path(f'/events/{event.id}')
        return {'success': True, 'event_id': event.id}

    @app.route('/events/<int:eid>')
    @cached_view
    def view_event(eid):
        event = db.session.get(Event, eid)
        if not event: abort(404)
        trophies = (
            db.session.query(ProfileBadge)
            .filter_by(event_id=eid)
            .order_by(ProfileBadge.awarded_at.desc())
            .all()
        )
        return {
            'event': event.to_dict(),
            'members': [
                dict(m.profile.to_dict(), member_role=m.role) for m in event.members
            ],
            'standings': leaderboard(db.session, eid),
            'matches': recent_matches(db.session, event_id=eid),
            'trophies': [dict(pb.to_dict(), profile_id=pb.profile_id) for pb in trophies],
        }

    # ---------- Play ----------
    @app.route('/play/casual', methods=['POST'])
    @login_required
    def play_casual():
        require_permission('matches.log')
        data = request.get_json(silent=True)
        if data is None:
            form = request.form
            data = {
                'format': form.get('format'),
                'profile_ids': ','.join(form.getlist('profile_ids')),
                'winner_profile_ids': ','.join(form.getlist('winner_profile_ids')),
                'deck_ids': {k[len('deck_'):]: v for k, v in form.items() if k.startswith('deck_')},
                'event_id': form.get('event_id'),
            }
        try:
            submission = parse_submission(data)
        except (ValueError, TypeError, AttributeError):
            return failure('Invalid submission.')
        result = log_casual_match(db.session, current_user._get_current_object(), submission)
        return result, (200 if result['success'] else 400)

    @app.route('/stats')
    @cached_view
    def stats():
        casual_games = db.session.query(Match).filter(Match.tournament_id.is_(None)).count()
        return {
            'players': leaderboard(db.session),
            'total_casual_games': casual_games,
        }

    # ---------- Shop ----------
    @app.route('/shop')
    @login_required
    @cached_view
    def shop():
        prizes = db.session.query(Prize).order_by(Prize.cost, Prize.id).all()
        return {'prizes': [p.to_dict() for p in prizes]}

    @app.route('/shop/<int:prize_id>/purchase', methods=['POST'])
    @login_required
    def purchase(prize_id):
        result = purchase_prize(db.session, current_user._get_current_object(), prize_id)
        return result, (200 if result['success'] else 400)

    # ---------- Admin ----------
    @app.route('/admin/matches/<int:mid>/delete', methods=['POST'])
    @login_required
    def admin_delete_match(mid):
        require_permission('matches.delete')
        if not delete_match(db.session, mid):
            abort(404)
        log_site('delete_match', 'success', f'match_id={mid}')
        return {'success': True}

    @app.route('/admin/badges/award', methods=['POST'])
    @login_required
    def admin_award_badge():
        require_permission('badges.award')
        data = payload()
        badge = db.session.query(Badge).filter_by(slug=(data.get('slug') or '').strip()).first()
        try:
            profile = db.session.get(Profile, int(data.get('profile_id') or 0))
            eid = int(data['event_id']) if data.get('event_id') else None
        except (TypeError, ValueError):
            return failure('Invalid award.')
        if not badge or not profile:
            abort(404)
        if eid is not None and not db.session.get(Event, eid):
            abort(404)
        created = award_badge(db.session, profile.id, badge, eid)
        db.session.commit()
        if not created:
            return {'success': True, 'message': 'Already awarded'}
        log_site('badge_award', 'success', f'{badge.slug} -> profile_id={profile.id}')
        if eid is not None:
            log_event(eid, 'badge_award', 'success', f'{badge.slug} -> profile_id={profile.id}')
            revalidate_path(f'/events/{eid}')
        return {'success': True, 'badge': badge.to_dict()}

    @app.route('/admin/prizes', methods=['POST'])
    @login_required
    def admin_stock_prize():
        require_permission('prizes.manage')
        data = payload()
        name = (data.get('name') or '').strip()
        try:
            cost = int(data.get('cost'))
            stock = int(data.get('stock') or 0)
        except (TypeError, ValueError):
            return failure('Cost and stock must be whole numbers.')
        if not name:
            return failure('Prize name is required.')
        if cost < 0 or stock < 0:
            return failure('Cost and stock cannot be negative.')
        prize = stock_prize(
            db.session, name, cost, stock,
            description=(data.get('description') or '').strip() or None,
            image_url=(data.get('image_url') or '').strip() or None,
        )
        log_site('prize_create', 'success', f'prize_id={prize.id}')
        return {'success': True, 'prize': prize.to_dict()}, 201

    @app.route('/admin/profiles/<int:pid>/tickets', methods=['POST'])
    @login_required
    def admin_adjust_tickets(pid):
        require_permission('tickets.adjust')
        try:
            amount = int(payload().get('amount'))
        except (TypeError, ValueError):
            return failure('Amount must be a valid number')
        result = adjust_tickets(db.session, pid, amount)
        if not result['success']:
            log_site('tickets_adjust', 'failure', f"profile_id={pid}: {result['message']}")
            return failure(result['message'], 404 if result['message'] == 'User not found' else 400)
        log_site('tickets_adjust', 'success', f'profile_id={pid}: {amount:+d}')
        return result

    @app.route('/admin/logs')
    @login_required
    def site_logs():
        require_admin()
        logs = db.session.query(SiteLog).order_by(SiteLog.timestamp.desc()).limit(200).all()
        return {'logs': [
            {
                'action': l.action,
                'result': l.result,
                'error': l.error,
                'profile_id': l.profile_id,
                'timestamp': l.timestamp.isoformat() if l.timestamp else None,
            }
            for l in logs
        ]}

    return app
