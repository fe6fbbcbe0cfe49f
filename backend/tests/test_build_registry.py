import pytest

from deploy_engine.services.build_registry import BuildRegistry
from deploy_engine.services.exceptions import BuildInProgressError
from deploy_engine.services.log_sink import LogSink
from deploy_engine.services.port_allocator import PortAllocator


def test_only_one_holder_per_project():
    registry = BuildRegistry()

    assert registry.try_acquire(1)
    assert not registry.try_acquire(1)
    assert registry.try_acquire(2)

    registry.release(1)
    assert not registry.is_building(1)
    assert registry.try_acquire(1)


def test_hold_fails_fast_and_always_releases():
    registry = BuildRegistry()
    registry.try_acquire(3)

    with pytest.raises(BuildInProgressError) as excinfo:
        with registry.hold(3):
            pass
    assert excinfo.value.project_id == 3
    assert str(excinfo.value) == "project is already building"

    registry.release(3)
    with pytest.raises(RuntimeError):
        with registry.hold(3):
            assert registry.is_building(3)
            raise RuntimeError("boom")
    assert not registry.is_building(3)


def test_detach_ignores_a_replaced_sink():
    registry = BuildRegistry()
    old, new = LogSink(), LogSink()

    registry.attach_sink(5, old)
    registry.attach_sink(5, new)
    registry.detach_sink(5, old)
    assert registry.active_sink(5) is new

    registry.detach_sink(5, new)
    assert registry.active_sink(5) is None


def test_ports_follow_project_ids():
    allocator = PortAllocator(base_port=20000)

    assert allocator.allocate_port(1) == 20001
    assert allocator.allocate_port(42) == 20042
    assert PortAllocator().allocate_port(7) == 10007
