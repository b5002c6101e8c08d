"""Prize wall purchases and ticket balances."""

from sqlalchemy.exc import SQLAlchemyError

from .models import Prize, Profile, log_site
from .revalidate import revalidate_path


def _failure(message):
    return {'success': False, 'message': message}


def _take_one(session, prize_id):
    # only decrements while stock remains; 0 rows means someone got there first
    return (
        session.query(Prize)
        .filter(Prize.id == prize_id, Prize.stock >= 1)
        .update({Prize.stock: Prize.stock - 1}, synchronize_session=False)
    )


def _charge(session, profile_id, cost):
    return (
        session.query(Profile)
        .filter(Profile.id == profile_id, Profile.tickets >= cost)
        .update({Profile.tickets: Profile.tickets - cost}, synchronize_session=False)
    )


def purchase_prize(session, profile, prize_id):
    """Spend ``profile``'s tickets on one unit of a prize.

    The stock decrement and the ticket charge are committed together; if the
    charge fails the rollback puts the unit back on the wall.
    """
    actor_id = profile.id if profile is not None else None
    try:
        prize = session.get(Prize, prize_id)
        if prize is None:
            return _failure('Prize not found')
        buyer = session.get(Profile, actor_id) if actor_id is not None else None
        if buyer is None:
            return _failure('User not found')

        tickets = buyer.tickets or 0
        if prize.stock <= 0:
            return _failure('This prize is out of stock')
        if tickets < prize.cost:
            return _failure(
                f'Insufficient tickets. You need {prize.cost} tickets but only have {tickets}'
            )

        name, cost = prize.name, prize.cost
        if _take_one(session, prize.id) != 1:
            session.rollback()
            log_site(session, 'purchase_prize', 'failure', f'prize_id={prize_id}: out of stock', actor_id)
            return _failure('Failed to update stock. The prize may be out of stock.')
        try:
            if _charge(session, buyer.id, cost) != 1:
                raise SQLAlchemyError('ticket balance changed during purchase')
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            log_site(session, 'purchase_prize', 'failure', f'prize_id={prize_id}: {exc}', actor_id)
            return _failure('Failed to process purchase. Please try again.')

        log_site(session, 'purchase_prize', 'success', f'prize_id={prize_id}', actor_id)
        revalidate_path('/shop')
        revalidate_path('/')
        return {'success': True, 'message': f'Successfully purchased {name}!'}
    except Exception as exc:
        session.rollback()
        log_site(session, 'purchase_prize', 'failure', str(exc), actor_id)
        return _failure(str(exc) or 'An unexpected error occurred')


def adjust_tickets(session, profile_id, amount):
    """Add ``amount`` (negative to subtract) to a profile's ticket balance."""
    profile = session.get(Profile, profile_id)
    if profile is None:
        return _failure('User not found')
    changed = (
        session.query(Profile)
        .filter(Profile.id == profile_id, Profile.tickets + amount >= 0)
        .update({Profile.tickets: Profile.tickets + amount}, synchronize_session=False)
    )
    if changed != 1:
        session.rollback()
        return _failure('Ticket balance cannot go below zero.')
    session.commit()
    return {'success': True, 'tickets': session.get(Profile, profile_id).tickets}


def stock_prize(session, name, cost, stock=0, description=None, image_url=None):
    prize = Prize(name=name, cost=cost, stock=stock, description=description, image_url=image_url)
    session.add(prize)
    session.commit()
    revalidate_path('/shop')
    return prize
