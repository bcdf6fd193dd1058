import pytest
from unittest.mock import MagicMock, patch

from intake_api.locks import SingleFlightLock


@pytest.fixture
def mock_redis():
    client = MagicMock()
    with patch("intake_api.locks._get_redis_client", return_value=client):
        yield client


def test_local_lock_is_non_blocking():
    lock = SingleFlightLock("sync")
    assert lock.acquire() is True
    assert lock.acquire() is False
    lock.release()
    assert lock.acquire() is True
    lock.release()


def test_redis_lock_uses_set_nx_px(mock_redis):
    mock_redis.set.return_value = True
    lock = SingleFlightLock("sync", redis_url="redis://r:6379/0", ttl_seconds=60)

    assert lock.acquire() is True
    args, kwargs = mock_redis.set.call_args
    assert args[0] == "intake:lock:sync"
    assert kwargs == {"nx": True, "px": 60000}

    lock.release()
    mock_redis.eval.assert_called_once()
    assert mock_redis.eval.call_args[0][2:] == ("intake:lock:sync", args[1])


def test_redis_lock_held_elsewhere(mock_redis):
    mock_redis.set.return_value = None
    lock = SingleFlightLock("sync", redis_url="redis://r:6379/0")

    assert lock.acquire() is False
    # The in-process half was released again.
    mock_redis.set.return_value = True
    assert lock.acquire() is True
    lock.release()


def test_redis_errors_release_local_lock(mock_redis):
    mock_redis.set.side_effect = ConnectionError("redis down")
    lock = SingleFlightLock("sync", redis_url="redis://r:6379/0")

    with pytest.raises(ConnectionError):
        lock.acquire()

    mock_redis.set.side_effect = None
    mock_redis.set.return_value = True
    assert lock.acquire() is True
    lock.release()
