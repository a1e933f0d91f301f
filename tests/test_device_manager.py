import pytest

from device_manager import DeviceManager, ManagerConfig
from io_devices import (
    ConnectionState,
    DeviceClass,
    DeviceNotConnectedError,
    DeviceNotFoundError,
    InvalidDeviceClassError,
    InvalidOperationKindError,
    OperationKind,
    OperationNotFoundError,
    OperationStatus,
)


@pytest.mark.parametrize(
    "device_class, capabilities",
    [
        (DeviceClass.USB, ("leer_datos", "escribir_datos")),
        (DeviceClass.PRINTER, ("estado_tinta", "imprimir")),
        (DeviceClass.HEADPHONES, ("capturar_audio", "reproducir_audio")),
    ],
)
def test_connect_produces_connected_device_per_class(manager, device_class, capabilities) -> None:
    device = manager.connect(device_class)

    assert device.device_id == f"dev_{device_class.value}_1"
    assert device.connection_state == ConnectionState.CONNECTED
    assert device.error_flag is False
    assert manager.registry.operations_for(device_class) == (OperationKind.READ, OperationKind.WRITE)
    assert manager.registry.capabilities_for(device_class) == capabilities
    assert manager.registry.active_count(device_class) == 1


def test_connect_ids_use_global_sequence(manager) -> None:
    usb = manager.connect("usb")
    printer = manager.connect("impresora")

    assert usb.device_id == "dev_usb_1"
    assert printer.device_id == "dev_impresora_2"
    assert [d.device_id for d in manager.devices()] == ["dev_usb_1", "dev_impresora_2"]


def test_connect_rejects_unknown_class(manager) -> None:
    with pytest.raises(InvalidDeviceClassError):
        manager.connect("scanner")

    assert manager.devices() == []
    assert manager.sweep_running is False


def test_submit_appends_same_pending_entry_to_device_and_queue(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)

    op_id = manager.submit_operation(device.device_id, "Write", payload="datos")

    assert len(device.pending_operations) == 1
    assert len(manager.queue) == 1
    device_op = device.pending_operations[0]
    queue_op = manager.queue.get(op_id)
    assert device_op.operation_id == queue_op.operation_id == op_id
    assert device_op.created_at == queue_op.created_at == clock.now
    assert queue_op.status == OperationStatus.PENDING
    assert queue_op.capability == "escribir_datos"
    assert queue_op.payload == "datos"


def test_submit_errors(manager) -> None:
    device = manager.connect(DeviceClass.USB)

    with pytest.raises(DeviceNotFoundError):
        manager.submit_operation("dev_usb_99", OperationKind.READ)
    with pytest.raises(InvalidOperationKindError):
        manager.submit_operation(device.device_id, "seek")

    manager.eject(device.device_id)
    with pytest.raises(DeviceNotConnectedError):
        manager.submit_operation(device.device_id, OperationKind.READ)
    assert len(manager.queue) == 0


def test_fail_flags_device_until_recovered_and_complete_never_does(manager) -> None:
    device = manager.connect(DeviceClass.USB)
    ok_id = manager.submit_operation(device.device_id, OperationKind.READ)
    bad_id = manager.submit_operation(device.device_id, OperationKind.WRITE)

    assert manager.complete(ok_id) is True
    assert device.error_flag is False

    assert manager.fail(bad_id) is True
    assert device.error_flag is True
    manager.submit_operation(device.device_id, OperationKind.READ)
    assert device.error_flag is True

    assert manager.recover_device(device.device_id) is True
    assert device.error_flag is False


def test_complete_and_fail_ignore_terminal_operations(manager) -> None:
    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, OperationKind.READ)

    assert manager.complete(op_id) is True
    completed_at = manager.get_operation(op_id).completed_at
    assert manager.complete(op_id) is False
    assert manager.fail(op_id) is False

    op = manager.get_operation(op_id)
    assert op.status == OperationStatus.COMPLETED
    assert op.completed_at == completed_at
    assert device.error_flag is False


def test_double_fail_retimestamps(manager, clock) -> None:
    device = manager.connect(DeviceClass.PRINTER)
    op_id = manager.submit_operation(device.device_id, OperationKind.WRITE)

    manager.fail(op_id)
    clock.advance(2)
    assert manager.fail(op_id) is True

    assert manager.get_operation(op_id).failed_at == clock.now


def test_unknown_operation_ids_raise(manager) -> None:
    manager.connect(DeviceClass.USB)

    with pytest.raises(OperationNotFoundError):
        manager.complete("op_usb_42")
    with pytest.raises(OperationNotFoundError):
        manager.fail("op_usb_42")


def test_recover_device_without_error_changes_nothing(manager) -> None:
    device = manager.connect(DeviceClass.HEADPHONES)
    op_id = manager.submit_operation(device.device_id, OperationKind.READ)
    before = manager.get_operation(op_id).to_dict()

    assert manager.recover_device(device.device_id) is False
    assert manager.get_operation(op_id).to_dict() == before
    with pytest.raises(DeviceNotFoundError):
        manager.recover_device("dev_auriculares_9")


def test_recover_resets_every_failed_operation(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    first = manager.submit_operation(device.device_id, OperationKind.READ)
    second = manager.submit_operation(device.device_id, OperationKind.WRITE)
    manager.fail(first)
    manager.fail(second)
    clock.advance(5)

    assert manager.recover_device(device.device_id) is True

    for op_id in (first, second):
        op = manager.get_operation(op_id)
        assert op.status == OperationStatus.PENDING
        assert op.created_at == clock.now


def test_eject_cancels_pending_and_decrements_count(manager) -> None:
    usb = manager.connect(DeviceClass.USB)
    other = manager.connect(DeviceClass.USB)
    pending = [manager.submit_operation(usb.device_id, OperationKind.READ) for _ in range(3)]
    done = manager.submit_operation(usb.device_id, OperationKind.WRITE)
    manager.complete(done)

    assert manager.eject(usb.device_id) is True

    assert manager.registry.active_count(DeviceClass.USB) == 1
    for op_id in pending:
        assert manager.get_operation(op_id).status == OperationStatus.CANCELLED
    assert manager.get_operation(done).status == OperationStatus.COMPLETED
    assert usb.pending_count() == 0
    assert manager.sweep_running is True
    assert other.is_connected


def test_eject_last_device_halts_sweep_and_reconnect_restarts_it(manager) -> None:
    device = manager.connect(DeviceClass.PRINTER)
    assert manager.sweep_running is True

    manager.eject(device.device_id)
    assert manager.sweep_running is False
    assert manager.registry.active_count(DeviceClass.PRINTER) == 0

    manager.connect(DeviceClass.USB)
    assert manager.sweep_running is True


def test_eject_errors_and_repeated_eject(manager) -> None:
    device = manager.connect(DeviceClass.USB)

    with pytest.raises(DeviceNotFoundError):
        manager.eject("dev_usb_7")

    assert manager.eject(device.device_id) is True
    assert manager.eject(device.device_id) is False
    assert manager.registry.active_count(DeviceClass.USB) == 0
    assert device in manager.devices()


def test_eject_clears_error_flag(manager) -> None:
    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, OperationKind.WRITE)
    manager.fail(op_id)

    manager.eject(device.device_id)

    assert device.error_flag is False
    assert manager.get_operation(op_id).status == OperationStatus.FAILED


def test_sweep_completes_only_operations_past_threshold(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    old = manager.submit_operation(device.device_id, OperationKind.WRITE)
    clock.advance(2)
    young = manager.submit_operation(device.device_id, OperationKind.READ)
    clock.advance(1)

    assert manager.run_sweep() == []

    clock.advance(0.5)
    assert manager.run_sweep() == [old]
    assert manager.get_operation(young).status == OperationStatus.PENDING


def test_sweep_is_idempotent_and_monotonic(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    completed = manager.submit_operation(device.device_id, OperationKind.READ)
    failed = manager.submit_operation(device.device_id, OperationKind.READ)
    manager.fail(failed)
    clock.advance(4)

    first = manager.run_sweep()
    completed_at = manager.get_operation(completed).completed_at
    second = manager.run_sweep(now=clock.now)

    assert first == [completed]
    assert second == []
    assert manager.get_operation(completed).completed_at == completed_at
    assert manager.get_operation(failed).status == OperationStatus.FAILED


def test_sweep_skips_disconnected_devices(manager, clock) -> None:
    keep = manager.connect(DeviceClass.USB)
    gone = manager.connect(DeviceClass.PRINTER)
    gone_op = manager.submit_operation(gone.device_id, OperationKind.WRITE)
    manager.eject(gone.device_id)
    keep_op = manager.submit_operation(keep.device_id, OperationKind.READ)
    clock.advance(10)

    assert manager.run_sweep() == [keep_op]
    assert manager.get_operation(gone_op).status == OperationStatus.CANCELLED


def test_usb_write_auto_completes_after_threshold(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, "Write")

    clock.advance(3.5)
    manager.run_sweep()

    assert manager.get_operation(op_id).status == OperationStatus.COMPLETED
    assert device.pending_count() == 0


def test_printer_fail_then_recover_end_to_end(manager) -> None:
    device = manager.connect(DeviceClass.PRINTER)
    op_id = manager.submit_operation(device.device_id, "Write")

    manager.fail(op_id)
    assert device.error_flag is True
    assert device.connection_state == ConnectionState.CONNECTED

    assert manager.recover_device(device.device_id) is True
    assert manager.get_operation(op_id).status == OperationStatus.PENDING
    assert device.error_flag is False


def test_recovered_operation_restarts_sla(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, OperationKind.READ)
    manager.fail(op_id)
    clock.advance(10)
    manager.recover_device(device.device_id)

    clock.advance(1)
    assert manager.run_sweep() == []
    clock.advance(3)
    assert manager.run_sweep() == [op_id]


def test_simulate_error_fails_oldest_pending(manager) -> None:
    device = manager.connect(DeviceClass.HEADPHONES)
    assert manager.simulate_error(device.device_id) is None

    first = manager.submit_operation(device.device_id, OperationKind.WRITE)
    manager.submit_operation(device.device_id, OperationKind.READ)

    assert manager.simulate_error(device.device_id) == first
    assert manager.get_operation(first).status == OperationStatus.FAILED
    assert device.error_flag is True


def test_status_listeners_receive_events_and_errors_are_contained(manager, clock) -> None:
    events = []

    def broken(event, payload):
        raise RuntimeError("boom")

    manager.add_status_listener(broken)
    manager.add_status_listener(lambda event, payload: events.append((event, payload)))

    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, OperationKind.READ)
    clock.advance(4)
    manager.run_sweep()
    manager.eject(device.device_id)

    assert [event for event, _ in events] == ["connect", "submit", "sweep", "eject"]
    assert events[2][1] == {"completed": [op_id]}


def test_snapshot_contents(manager, clock) -> None:
    usb = manager.connect(DeviceClass.USB)
    printer = manager.connect(DeviceClass.PRINTER)
    for _ in range(12):
        manager.submit_operation(usb.device_id, OperationKind.READ)
        clock.advance(0.1)
    job = manager.submit_operation(printer.device_id, OperationKind.WRITE)
    manager.fail(job)

    snapshot = manager.snapshot()

    assert snapshot["sweep_running"] is True
    rows = {row["device_id"]: row for row in snapshot["devices"]}
    assert rows[usb.device_id]["pending_count"] == 12
    assert rows[printer.device_id]["error_flag"] is True
    assert rows[printer.device_id]["visible_properties"]["Estado"] == "error"
    assert rows[usb.device_id]["driver_name"] == "usb_driver.sys"
    assert [h["active_count"] for h in snapshot["handlers"]] == [1, 1, 0]
    assert len(snapshot["queue"]) == 10
    assert snapshot["queue"][0]["operation_id"] == job
    assert snapshot["queue"][0]["status"] == "FAILED"
    assert snapshot["queue"][1]["label"].startswith(f"{usb.device_id}: READ (PENDING)")
    assert snapshot["stats"]["total"] == 13


def test_recent_limit_from_config(clock) -> None:
    config = ManagerConfig(tick_interval=3600.0, recent_limit=2, log_file=None)
    with DeviceManager(config, clock=clock) as mgr:
        device = mgr.connect(DeviceClass.USB)
        for _ in range(5):
            mgr.submit_operation(device.device_id, OperationKind.READ)
            clock.advance(1)
        assert len(mgr.snapshot()["queue"]) == 2
    assert mgr.sweep_running is False


def test_background_sweep_completes_operations() -> None:
    import threading

    done = threading.Event()
    config = ManagerConfig(tick_interval=0.01, sla_threshold=0.02, log_file=None)
    with DeviceManager(config) as mgr:
        mgr.add_status_listener(lambda event, payload: event == "sweep" and done.set())
        device = mgr.connect(DeviceClass.USB)
        op_id = mgr.submit_operation(device.device_id, OperationKind.WRITE)

        assert done.wait(timeout=5.0)
        assert mgr.get_operation(op_id).status == OperationStatus.COMPLETED


def test_sweep_with_explicit_time_stamps_completion_at_that_time(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, OperationKind.WRITE)

    sweep_time = clock.now + 10
    assert manager.run_sweep(now=sweep_time) == [op_id]

    op = manager.get_operation(op_id)
    assert op.completed_at == sweep_time
    assert op.duration() == pytest.approx(10.0)
    assert manager.snapshot()["stats"]["latency"]["max"] == pytest.approx(10.0)


def test_fail_after_eject_is_ignored(manager, clock) -> None:
    device = manager.connect(DeviceClass.USB)
    op_id = manager.submit_operation(device.device_id, OperationKind.WRITE)
    manager.fail(op_id)
    failed_at = manager.get_operation(op_id).failed_at
    manager.eject(device.device_id)
    clock.advance(5)

    assert manager.fail(op_id) is False

    op = manager.get_operation(op_id)
    assert op.status == OperationStatus.FAILED
    assert op.failed_at == failed_at
    assert device.error_flag is False
