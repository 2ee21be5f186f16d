from datetime import datetime, timedelta

import pytest

from app.qrms.db import session_scope
from app.qrms.exceptions import NotFound, ValidationError
from app.qrms.modules.notifications.models import Notification
from app.qrms.modules.notifications.service import (
    delete_notification,
    dispatch,
    list_for_user,
    mark_all_read,
    mark_read,
    purge_read,
    unread_count,
)


def _notify(s, user, title="Heads up", type="APPROVAL"):
    return dispatch(s, user_id=user.id, type=type, title=title, message="body", link="/x")


def test_dispatch_and_unread_count(app, users):
    with session_scope(app) as s:
        _notify(s, users["editor"], "one")
        _notify(s, users["editor"], "two", type="REJECTION")
        _notify(s, users["viewer"], "other")
        assert dispatch(s, user_id=None, type="APPROVAL", title="t", message="m") is None
        with pytest.raises(ValidationError):
            dispatch(s, user_id=users["editor"].id, type="BROADCAST", title="t", message="m")

    with session_scope(app) as s:
        assert unread_count(s, users["editor"]) == 2
        titles = [n.title for n in list_for_user(s, users["editor"])]
        assert sorted(titles) == ["one", "two"]
        assert len(list_for_user(s, users["editor"], limit=1)) == 1


def test_mark_read_is_per_user(app, users):
    with session_scope(app) as s:
        mine = _notify(s, users["editor"])
        theirs = _notify(s, users["viewer"])

    with session_scope(app) as s:
        with pytest.raises(NotFound):
            mark_read(s, users["editor"], theirs.id)
        n = mark_read(s, users["editor"], mine.id)
        assert n.is_read is True
        assert n.read_at is not None

    with session_scope(app) as s:
        assert unread_count(s, users["editor"]) == 0
        assert unread_count(s, users["viewer"]) == 1
        assert list_for_user(s, users["editor"], unread_only=True) == []


def test_mark_all_read_and_delete(app, users):
    with session_scope(app) as s:
        for i in range(3):
            _notify(s, users["editor"], f"n{i}")
        keep = _notify(s, users["viewer"])

    with session_scope(app) as s:
        assert mark_all_read(s, users["editor"]) == 3
    with session_scope(app) as s:
        assert unread_count(s, users["editor"]) == 0
        first = list_for_user(s, users["editor"])[0]
        delete_notification(s, users["editor"], first.id)
        with pytest.raises(NotFound):
            delete_notification(s, users["editor"], keep.id)
    with session_scope(app) as s:
        assert len(list_for_user(s, users["editor"])) == 2
        assert s.get(Notification, keep.id) is not None


def test_purge_only_removes_old_read_rows(app, users):
    now = datetime(2026, 3, 1, 12, 0, 0)
    with session_scope(app) as s:
        old_read = _notify(s, users["editor"], "old read")
        old_unread = _notify(s, users["editor"], "old unread")
        fresh_read = _notify(s, users["editor"], "fresh read")
        s.flush()
        old_read.created_at = now - timedelta(days=120)
        old_read.is_read = True
        old_unread.created_at = now - timedelta(days=120)
        fresh_read.created_at = now - timedelta(days=2)
        fresh_read.is_read = True

    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            purge_read(s, retention_days=-1, now=now)
        assert purge_read(s, retention_days=90, now=now) == 1
    with session_scope(app) as s:
        remaining = sorted(n.title for n in s.query(Notification).all())
        assert remaining == ["fresh read", "old unread"]
