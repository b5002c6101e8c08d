"""Cached JSON views and their invalidation.

GET views wrapped with :func:`cached_view` keep their payload per request path
until a write calls :func:`revalidate_path` for that path.
"""

from functools import wraps

from blinker import Namespace
from flask import current_app, request

_signals = Namespace()

# sent with the app as sender and ``path`` as keyword
path_revalidated = _signals.signal('path-revalidated')


def revalidate_path(path):
    path_revalidated.send(current_app._get_current_object(), path=path)


def drop_cached_view(sender, path, **extra):
    sender.extensions.get('view_cache', {}).pop(path, None)


def init_view_cache(app):
    app.extensions['view_cache'] = {}
    path_revalidated.connect(drop_cached_view, sender=app)


def cached_view(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not current_app.config.get('VIEW_CACHE_ENABLED', True):
            return view(*args, **kwargs)
        cache = current_app.extensions['view_cache']
        if request.path not in cache:
            cache[request.path] = view(*args, **kwargs)
        return cache[request.path]
    return wrapper
