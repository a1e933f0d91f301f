"""
Gestor de dispositivos de E/S

Este módulo contiene el DeviceManager: crea y expulsa dispositivos, recibe las
operaciones de E/S, aplica las transiciones de estado y ejecuta el barrido
periódico que completa automáticamente las operaciones pendientes más antiguas.
"""

import itertools
import json
import logging
import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from io_devices import (
    DeviceClass, ConnectionState, OperationKind, OperationStatus,
    Device, Operation, HandlerRegistry, OperationQueue,
    DeviceNotFoundError, OperationNotFoundError, DeviceNotConnectedError,
    parse_device_class, parse_operation_kind, logger
)
from io_statistics import compute_statistics, generate_random_operations

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

def setup_logging(level: int = logging.INFO, log_file: Optional[str] = "io_simulation.log"):
    """Configurar el registro en consola y, opcionalmente, en archivo"""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)

# =============================================================================
# CONFIGURACIÓN
# =============================================================================

class ManagerConfig:
    """
    Parámetros del gestor: intervalo del barrido, umbral de antigüedad (SLA),
    número de operaciones recientes en las vistas y archivo de registro.
    """
    def __init__(self, tick_interval: float = 1.0, sla_threshold: float = 3.0,
                 recent_limit: int = 10, log_file: Optional[str] = "io_simulation.log"):
        if tick_interval <= 0:
            raise ValueError(f"tick_interval debe ser positivo: {tick_interval}")
        if sla_threshold <= 0:
            raise ValueError(f"sla_threshold debe ser positivo: {sla_threshold}")
        if int(recent_limit) <= 0:
            raise ValueError(f"recent_limit debe ser positivo: {recent_limit}")
        self.tick_interval = float(tick_interval)
        self.sla_threshold = float(sla_threshold)
        self.recent_limit = int(recent_limit)
        self.log_file = log_file

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tick_interval": self.tick_interval,
            "sla_threshold": self.sla_threshold,
            "recent_limit": self.recent_limit,
            "log_file": self.log_file,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagerConfig":
        known = cls().to_dict()
        return cls(**{key: value for key, value in data.items() if key in known})

    @classmethod
    def load(cls, path: str) -> "ManagerConfig":
        """Cargar una configuración desde un archivo JSON"""
        with open(path, 'r') as f:
            config = cls.from_dict(json.load(f))
        logger.info(f"Configuración cargada desde {path}")
        return config

    def save(self, path: str):
        """Guardar la configuración en un archivo JSON"""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=4)
        logger.info(f"Configuración guardada en {path}")

# =============================================================================
# BARRIDO PERIÓDICO
# =============================================================================

class SweepTimer(threading.Thread):
    """
    Hilo que invoca el barrido de auto-completado cada `interval` segundos
    hasta que se detiene. Un temporizador detenido no se reutiliza.
    """
    def __init__(self, sweep: Callable[[], Any], interval: float):
        super().__init__(name="SweepTimer")
        self.daemon = True
        self.sweep = sweep
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        """Bucle principal del barrido"""
        logger.info("Barrido de auto-completado iniciado")
        while not self._stop_event.wait(self.interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error en el barrido de auto-completado: {e}")
        logger.info("Barrido de auto-completado detenido")

    def stop(self):
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

# =============================================================================
# GESTIÓN DE DISPOSITIVOS
# =============================================================================

class DeviceManager:
    """
    Torre de control de la capa de dispositivos. Es el único que modifica
    dispositivos y la cola de operaciones; los comandos y el barrido se
    serializan con un mismo candado.
    """
    def __init__(self, config: Optional[ManagerConfig] = None,
                 clock: Optional[Callable[[], float]] = None,
                 rng: Optional[random.Random] = None):
        self.config = config or ManagerConfig()
        self.clock = clock or time.monotonic
        self.rng = rng or random.Random()
        self.registry = HandlerRegistry()
        self.queue = OperationQueue(self.clock)
        self._devices: Dict[str, Device] = {}
        self._device_seq = itertools.count(1)
        self._operation_ticks = itertools.count(1)
        self._lock = threading.RLock()
        self._timer: Optional[SweepTimer] = None
        self.status_listeners: List[Callable[[str, Dict[str, Any]], None]] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

    # -------------------------------------------------------------------------
    # Consultas
    # -------------------------------------------------------------------------

    def get_device(self, device_id: str) -> Device:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def devices(self) -> List[Device]:
        with self._lock:
            return list(self._devices.values())

    def connected_devices(self) -> List[Device]:
        with self._lock:
            return [device for device in self._devices.values() if device.is_connected]

    def get_operation(self, operation_id: str) -> Operation:
        operation = self.queue.get(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        return operation

    @property
    def sweep_running(self) -> bool:
        return self._timer is not None and not self._timer.stopped

    # -------------------------------------------------------------------------
    # Comandos
    # -------------------------------------------------------------------------

    def connect(self, device_class) -> Device:
        """Conectar un nuevo dispositivo de la clase indicada"""
        device_class = parse_device_class(device_class)
        with self._lock:
            device_id = f"dev_{device_class.value}_{next(self._device_seq)}"
            device = Device(device_id, device_class, self.clock, self._operation_ticks, self.rng)
            self._devices[device_id] = device
            self.registry.increment(device_class)
            logger.info(f"Dispositivo conectado: {device_id} ({self.registry.handler_name(device_class)})")
            if not self.sweep_running:
                self._start_sweep()
        self._notify("connect", {"device_id": device_id})
        return device

    def eject(self, device_id: str) -> bool:
        """Expulsar un dispositivo y cancelar sus operaciones pendientes"""
        with self._lock:
            device = self.get_device(device_id)
            if not device.is_connected:
                logger.warning(f"Dispositivo {device_id} ya estaba desconectado")
                return False
            device.eject()
            self.registry.decrement(device.device_class)
            # La cola guarda las mismas instancias que el dispositivo
            cancelled = device.cancel_pending()
            if cancelled:
                logger.info(f"[{device_id}] {len(cancelled)} operaciones canceladas")
            if not any(d.is_connected for d in self._devices.values()):
                self._stop_sweep()
        self._notify("eject", {"device_id": device_id,
                               "cancelled": [op.operation_id for op in cancelled]})
        return True

    def recover_device(self, device_id: str) -> bool:
        """Recuperar un dispositivo en estado de error"""
        with self._lock:
            device = self.get_device(device_id)
            recovered = device.recover()
        if recovered:
            self._notify("recover", {"device_id": device_id})
        return recovered

    def submit_operation(self, device_id: str, kind, payload: Any = None) -> str:
        """Emitir una operación de E/S sobre un dispositivo conectado"""
        kind = parse_operation_kind(kind)
        with self._lock:
            device = self.get_device(device_id)
            if not device.is_connected:
                logger.warning(f"Operación rechazada: {device_id} no está conectado")
                raise DeviceNotConnectedError(device_id)
            operation = device.submit_operation(kind, payload)
            self.queue.record(operation)
            logger.info(f"Operación {operation.operation_id} ({operation.capability}) "
                        f"agregada para {device_id}")
        self._notify("submit", {"device_id": device_id, "operation_id": operation.operation_id})
        return operation.operation_id

    def complete(self, operation_id: str) -> bool:
        """Completar una operación. False si ya estaba en un estado terminal"""
        with self._lock:
            completed = self._complete_locked(operation_id)
        if completed:
            self._notify("complete", {"operation_id": operation_id})
        return completed

    def fail(self, operation_id: str) -> bool:
        """Marcar una operación como fallida y su dispositivo en error"""
        with self._lock:
            operation = self.get_operation(operation_id)
            device = self._devices[operation.device_id]
            # COMPLETED y CANCELLED no se revierten; un segundo fallo vuelve a marcar failed_at
            # solo mientras el dispositivo siga conectado
            failed = device.is_connected and operation.status in (
                OperationStatus.PENDING, OperationStatus.FAILED)
            if failed:
                device.fail(operation_id)
        if failed:
            self._notify("fail", {"operation_id": operation_id, "device_id": operation.device_id})
        else:
            logger.debug(f"Operación {operation_id} ya terminada, fallo ignorado")
        return failed

    def simulate_error(self, device_id: str) -> Optional[str]:
        """Hacer fallar la operación pendiente más antigua de un dispositivo"""
        with self._lock:
            device = self.get_device(device_id)
            if not device.is_connected:
                raise DeviceNotConnectedError(device_id)
            pending = [op for op in device.pending_operations if op.is_pending]
            if not pending:
                logger.warning(f"No hay operaciones pendientes para fallar en {device_id}")
                return None
            operation_id = pending[0].operation_id
        if not self.fail(operation_id):
            return None
        return operation_id

    # -------------------------------------------------------------------------
    # Barrido de auto-completado
    # -------------------------------------------------------------------------

    def _complete_locked(self, operation_id: str, now: Optional[float] = None) -> bool:
        operation = self.get_operation(operation_id)
        if not operation.is_pending:
            logger.debug(f"Operación {operation_id} ya terminada ({operation.status.name})")
            return False
        self._devices[operation.device_id].complete(operation_id, now)
        return operation.status == OperationStatus.COMPLETED

    def run_sweep(self, now: Optional[float] = None) -> List[str]:
        """Completar las operaciones pendientes que superan el umbral de antigüedad"""
        completed = []
        with self._lock:
            now = self.clock() if now is None else now
            for device in self._devices.values():
                if device.connection_state != ConnectionState.CONNECTED:
                    continue
                for operation in list(device.pending_operations):
                    if operation.is_pending and operation.age(now) > self.config.sla_threshold:
                        if self._complete_locked(operation.operation_id, now):
                            completed.append(operation.operation_id)
        if completed:
            logger.info(f"Barrido: {len(completed)} operaciones completadas automáticamente")
            self._notify("sweep", {"completed": completed})
        return completed

    def _start_sweep(self):
        self._timer = SweepTimer(self.run_sweep, self.config.tick_interval)
        self._timer.start()

    def _stop_sweep(self):
        if self._timer is not None:
            self._timer.stop()
            self._timer = None

    def shutdown(self):
        """Detener el barrido y liberar el hilo"""
        with self._lock:
            timer = self._timer
            self._stop_sweep()
        if timer is not None and timer is not threading.current_thread():
            timer.join(timeout=1.0)

    # -------------------------------------------------------------------------
    # Vistas
    # -------------------------------------------------------------------------

    def add_status_listener(self, listener: Callable[[str, Dict[str, Any]], None]):
        """Agregar un oyente para ser notificado de cambios de estado"""
        self.status_listeners.append(listener)

    def _notify(self, event: str, payload: Dict[str, Any]):
        for listener in list(self.status_listeners):
            try:
                listener(event, payload)
            except Exception as e:
                logger.error(f"Error en el oyente de estado: {e}")

    def snapshot(self) -> Dict[str, Any]:
        """Instantánea de solo lectura para la capa de presentación"""
        with self._lock:
            now = self.clock()
            return {
                "devices": [device.to_dict() for device in self._devices.values()],
                "handlers": self.registry.to_dicts(),
                "queue": [self._queue_row(op, now)
                          for op in self.queue.recent_first(self.config.recent_limit)],
                "stats": compute_statistics(list(self.queue), now),
                "sweep_running": self.sweep_running,
            }

    @staticmethod
    def _queue_row(operation: Operation, now: float) -> Dict[str, Any]:
        row = operation.to_dict(now)
        if operation.status == OperationStatus.COMPLETED:
            row["label"] = f"{operation.device_id}: {operation.kind.name} (COMPLETED) ({row['duration']:.2f}s)"
        elif operation.is_pending:
            row["label"] = f"{operation.device_id}: {operation.kind.name} (PENDING) (espera: {int(row['age'])}s)"
        else:
            row["label"] = f"{operation.device_id}: {operation.kind.name} ({operation.status.name})"
        return row

# =============================================================================
# PRUEBA DE FUNCIONAMIENTO
# =============================================================================

def run_demo(config: Optional[ManagerConfig] = None):
    """Prueba la funcionalidad principal del sistema"""
    config = config or ManagerConfig()
    setup_logging(log_file=config.log_file)

    with DeviceManager(config) as manager:
        usb = manager.connect(DeviceClass.USB)
        printer = manager.connect(DeviceClass.PRINTER)
        manager.connect(DeviceClass.HEADPHONES)

        manager.submit_operation(usb.device_id, OperationKind.WRITE, payload="datos")
        print_job = manager.submit_operation(printer.device_id, OperationKind.WRITE, payload="documento")
        generate_random_operations(manager, rng=manager.rng)

        manager.fail(print_job)
        manager.recover_device(printer.device_id)

        # Esperar a que el barrido complete las operaciones
        time.sleep(config.sla_threshold + 2 * config.tick_interval)

        manager.eject(usb.device_id)
        logger.info(json.dumps(manager.snapshot()["stats"], indent=4))

    print("Prueba de funcionalidad principal completada")

if __name__ == "__main__":
    run_demo()
