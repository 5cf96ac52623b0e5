from latchkey.service.email import EmailService
from latchkey.service.runtime import Runtime, _mask_url_password
from latchkey.storage.memory import MemoryStore


def test_runtime_builds_memory_stack(settings, tmp_path):
    runtime = Runtime(settings.model_copy(update={"use_memory_store": True}))

    assert isinstance(runtime.store, MemoryStore)
    assert isinstance(runtime.mailer, EmailService)
    assert runtime.auth.store is runtime.store
    assert runtime.lifecycle.store is runtime.store
    assert runtime.sessions.store is runtime.store
    assert (tmp_path / "state").is_dir()


def test_runtimes_do_not_share_state(settings):
    first = Runtime(settings, store=MemoryStore())
    second = Runtime(settings, store=MemoryStore())

    assert first.store is not second.store
    assert first.auth is not second.auth


def test_mask_url_password():
    assert (
        _mask_url_password("postgresql://app:secret@db:5432/latchkey")
        == "postgresql://app:***@db:5432/latchkey"
    )
    assert _mask_url_password("postgresql://db/latchkey") == "postgresql://db/latchkey"
    assert _mask_url_password(None) is None
