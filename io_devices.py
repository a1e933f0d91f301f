"""
Modelo de dispositivos de E/S - Componentes Principales

Este módulo contiene los tipos básicos de la capa de dispositivos simulada:
clases de dispositivo, operaciones de E/S, la tabla de manejadores y la cola
global de operaciones. El DeviceManager (device_manager.py) es el único que
modifica estos objetos.
"""

import time
import random
import logging
from enum import Enum, auto
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

logger = logging.getLogger("SimulacionDispositivos")

# =============================================================================
# ENUMS Y CONSTANTES
# =============================================================================

class DeviceClass(Enum):
    USB = "usb"
    PRINTER = "impresora"
    HEADPHONES = "auriculares"

class ConnectionState(Enum):
    CONNECTED = auto()
    DISCONNECTED = auto()

class OperationKind(Enum):
    READ = auto()
    WRITE = auto()

class OperationStatus(Enum):
    PENDING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

TERMINAL_STATUSES = (OperationStatus.COMPLETED, OperationStatus.FAILED, OperationStatus.CANCELLED)

# Verbos del simulador original: entrada = lectura, salida = escritura
_KIND_ALIASES = {
    "entrada": OperationKind.READ,
    "salida": OperationKind.WRITE,
}

# =============================================================================
# ERRORES
# =============================================================================

class DeviceError(Exception):
    """Error base para todos los comandos rechazados por la capa de dispositivos"""

class DeviceNotFoundError(DeviceError, LookupError):
    def __init__(self, device_id: str):
        super().__init__(f"Dispositivo no encontrado: {device_id}")
        self.device_id = device_id

class OperationNotFoundError(DeviceError, LookupError):
    def __init__(self, operation_id: str):
        super().__init__(f"Operación no encontrada: {operation_id}")
        self.operation_id = operation_id

class DeviceNotConnectedError(DeviceError):
    def __init__(self, device_id: str):
        super().__init__(f"Dispositivo {device_id} no conectado")
        self.device_id = device_id

class InvalidDeviceClassError(DeviceError, ValueError):
    pass

class InvalidOperationKindError(DeviceError, ValueError):
    pass

# =============================================================================
# PERFILES POR CLASE DE DISPOSITIVO
# =============================================================================

class DeviceProfile:
    """
    Datos estáticos de una clase de dispositivo: nombre del driver y del manejador,
    capacidades concretas para cada tipo de operación y propiedades cosméticas.
    """
    def __init__(self, handler_name: str, capabilities: Dict[OperationKind, str],
                 visible_extras: Dict[str, str], hidden_extras: Dict[str, str]):
        self.handler_name = handler_name
        self.capabilities = capabilities
        self.visible_extras = visible_extras
        self.hidden_extras = hidden_extras

DEVICE_PROFILES: Dict[DeviceClass, DeviceProfile] = {
    DeviceClass.USB: DeviceProfile(
        handler_name="usb_handler.sys",
        capabilities={OperationKind.READ: "leer_datos", OperationKind.WRITE: "escribir_datos"},
        visible_extras={"Modelo": "Genérico USB 3.0", "Capacidad": "32 GB"},
        hidden_extras={"Velocidad": "5 Gbps", "Tipo de controlador": "UHCI"},
    ),
    DeviceClass.PRINTER: DeviceProfile(
        handler_name="printer_handler.sys",
        capabilities={OperationKind.READ: "estado_tinta", OperationKind.WRITE: "imprimir"},
        visible_extras={"Modelo": "Impresora Laser XYZ", "Tipo de tinta": "Tóner"},
        hidden_extras={"Resolución": "1200x1200 dpi", "Memoria interna": "128 MB"},
    ),
    DeviceClass.HEADPHONES: DeviceProfile(
        handler_name="audio_handler.sys",
        capabilities={OperationKind.READ: "capturar_audio", OperationKind.WRITE: "reproducir_audio"},
        visible_extras={"Modelo": "Auriculares Stereo Pro", "Conectividad": "Bluetooth"},
        hidden_extras={"Frecuencia respuesta": "20Hz-20kHz", "Nivel impedancia": "32 Ohm"},
    ),
}

def parse_device_class(value: Any) -> DeviceClass:
    """Convertir un DeviceClass, su valor o su nombre en un DeviceClass"""
    if isinstance(value, DeviceClass):
        return value
    if isinstance(value, str):
        text = value.strip()
        for device_class in DeviceClass:
            if text.lower() in (device_class.value, device_class.name.lower()):
                return device_class
    raise InvalidDeviceClassError(f"Clase de dispositivo desconocida: {value!r}")

def parse_operation_kind(value: Any) -> OperationKind:
    """Convertir un OperationKind, su nombre o un verbo del simulador en un OperationKind"""
    if isinstance(value, OperationKind):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _KIND_ALIASES:
            return _KIND_ALIASES[text]
        for kind in OperationKind:
            if text == kind.name.lower():
                return kind
    raise InvalidOperationKindError(f"Tipo de operación desconocido: {value!r}")

def driver_name_for(device_class: DeviceClass) -> str:
    return f"{device_class.value}_driver.sys"

# =============================================================================
# ESTRUCTURAS DE DATOS
# =============================================================================

class Operation:
    """
    Representa una operación de E/S emitida contra un dispositivo.
    Existe una sola instancia por operación: la lista del dispositivo y la cola
    global guardan referencias al mismo objeto.
    """
    def __init__(self, operation_id: str, kind: OperationKind, capability: str,
                 device_id: str, created_at: float, payload: Any = None):
        self.operation_id = operation_id
        self.kind = kind
        self.capability = capability
        self.device_id = device_id
        self.payload = payload if kind == OperationKind.WRITE else None
        self.status = OperationStatus.PENDING
        self.created_at = created_at
        self.completed_at: Optional[float] = None
        self.failed_at: Optional[float] = None
        self.cancelled_at: Optional[float] = None

    def __str__(self):
        return (f"[Operation] ID: {self.operation_id}, Tipo: {self.kind.name}, "
                f"Capacidad: {self.capability}, Dispositivo: {self.device_id}, "
                f"Estado: {self.status.name}")

    @property
    def is_pending(self) -> bool:
        return self.status == OperationStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_completed(self, now: float) -> bool:
        """Pasar a COMPLETED; solo una operación pendiente puede completarse"""
        if self.status != OperationStatus.PENDING:
            return False
        self.status = OperationStatus.COMPLETED
        self.completed_at = now
        return True

    def mark_failed(self, now: float) -> bool:
        """Pasar a FAILED; un segundo fallo vuelve a marcar failed_at"""
        if self.status not in (OperationStatus.PENDING, OperationStatus.FAILED):
            return False
        self.status = OperationStatus.FAILED
        self.failed_at = now
        return True

    def mark_cancelled(self, now: float) -> bool:
        if self.status != OperationStatus.PENDING:
            return False
        self.status = OperationStatus.CANCELLED
        self.cancelled_at = now
        return True

    def reset_pending(self, now: float) -> bool:
        """Devolver una operación fallida a PENDING reiniciando su antigüedad"""
        if self.status != OperationStatus.FAILED:
            return False
        # failed_at se conserva como historial
        self.status = OperationStatus.PENDING
        self.created_at = now
        return True

    def age(self, now: float) -> float:
        return now - self.created_at

    def duration(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.created_at

    def to_dict(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Convertir la operación a un diccionario para su serialización"""
        data = {
            "operation_id": self.operation_id,
            "device_id": self.device_id,
            "kind": self.kind.name,
            "capability": self.capability,
            "status": self.status.name,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "cancelled_at": self.cancelled_at,
        }
        if self.payload is not None:
            data["payload"] = self.payload
        if now is not None:
            data["age"] = self.age(now) if self.is_pending else None
            data["duration"] = self.duration()
        return data


class Device:
    """
    Dispositivo conectado de una de las tres clases. Mantiene su estado de conexión,
    el indicador de error y la lista ordenada de sus operaciones.
    """
    def __init__(self, device_id: str, device_class: DeviceClass,
                 clock: Callable[[], float], operation_ticks: Iterator[int],
                 rng: Optional[random.Random] = None):
        self.device_id = device_id
        self.device_class = device_class
        self.connection_state = ConnectionState.CONNECTED
        self.error_flag = False
        self.driver_name = driver_name_for(device_class)
        self._clock = clock
        self._operation_ticks = operation_ticks
        self.connected_at = clock()
        self.pending_operations: List[Operation] = []

        profile = DEVICE_PROFILES[device_class]
        self.visible_properties: Dict[str, str] = {
            "Tipo": device_class.value,
            "ID": device_id,
            "Estado": "conectado",
            "Driver": self.driver_name,
        }
        self.visible_properties.update(profile.visible_extras)
        self.hidden_properties = self._generate_hidden_properties(profile, rng or random.Random())

    def __str__(self):
        return (f"[Device] {self.device_id} (Clase: {self.device_class.name}, "
                f"Estado: {self.connection_state.name}, Error: {self.error_flag})")

    @staticmethod
    def _generate_hidden_properties(profile: DeviceProfile, rng: random.Random) -> Dict[str, str]:
        hidden = {
            "Dirección E/S": f"0x{rng.randrange(65535):x}",
            "IRQ": str(rng.randint(1, 15)),
            "Buffer Size": f"{rng.randrange(1024) + 256} KB",
            "Prioridad": str(rng.randint(1, 5)),
            "Tiempo de conexión": time.strftime("%H:%M:%S"),
        }
        hidden.update(profile.hidden_extras)
        return hidden

    @property
    def is_connected(self) -> bool:
        return self.connection_state == ConnectionState.CONNECTED

    def _refresh_estado(self):
        if not self.is_connected:
            self.visible_properties["Estado"] = "desconectado"
        elif self.error_flag:
            self.visible_properties["Estado"] = "error"
        else:
            self.visible_properties["Estado"] = "conectado"

    def find_operation(self, operation_id: str) -> Optional[Operation]:
        for operation in self.pending_operations:
            if operation.operation_id == operation_id:
                return operation
        return None

    def capability_for(self, kind: OperationKind) -> str:
        return DEVICE_PROFILES[self.device_class].capabilities[kind]

    def submit_operation(self, kind: OperationKind, payload: Any = None) -> Optional[Operation]:
        """Agregar una nueva operación pendiente; None si el dispositivo no está conectado"""
        if not self.is_connected:
            logger.warning(f"[{self.device_id}] Operación rechazada: dispositivo no conectado")
            return None
        tick = next(self._operation_ticks)
        operation = Operation(
            operation_id=f"op_{self.device_class.value}_{tick}",
            kind=kind,
            capability=self.capability_for(kind),
            device_id=self.device_id,
            created_at=self._clock(),
            payload=payload,
        )
        self.pending_operations.append(operation)
        logger.debug(f"[{self.device_id}] Operación agregada: {operation}")
        return operation

    def complete(self, operation_id: str, now: Optional[float] = None) -> bool:
        """Completar una operación pendiente. Devuelve si la operación existe"""
        operation = self.find_operation(operation_id)
        if operation is None:
            return False
        if operation.mark_completed(self._clock() if now is None else now):
            logger.debug(f"[{self.device_id}] Operación completada: {operation_id}")
        return True

    def fail(self, operation_id: str) -> bool:
        """Marcar una operación como fallida y el dispositivo en error. Devuelve si existe"""
        operation = self.find_operation(operation_id)
        if operation is None:
            return False
        if operation.mark_failed(self._clock()) and self.is_connected:
            self.error_flag = True
            self._refresh_estado()
            logger.error(f"[{self.device_id}] Operación fallida: {operation_id}")
        return True

    def recover(self) -> bool:
        """Limpiar el estado de error y reencolar las operaciones fallidas"""
        if not self.error_flag:
            return False
        now = self._clock()
        self.error_flag = False
        reset = [op for op in self.pending_operations if op.reset_pending(now)]
        self._refresh_estado()
        logger.info(f"[{self.device_id}] Dispositivo recuperado, {len(reset)} operaciones reencoladas")
        return True

    def eject(self):
        """Desconectar el dispositivo. No cancela sus operaciones pendientes"""
        self.connection_state = ConnectionState.DISCONNECTED
        self.error_flag = False
        self._refresh_estado()
        logger.info(f"[{self.device_id}] Dispositivo desconectado")

    def cancel_pending(self) -> List[Operation]:
        now = self._clock()
        return [op for op in self.pending_operations if op.mark_cancelled(now)]

    def pending_count(self) -> int:
        return sum(1 for op in self.pending_operations if op.is_pending)

    def to_dict(self) -> Dict[str, Any]:
        """Convertir el dispositivo a un diccionario para las vistas"""
        return {
            "device_id": self.device_id,
            "device_class": self.device_class.value,
            "connection_state": self.connection_state.name,
            "error_flag": self.error_flag,
            "pending_count": self.pending_count(),
            "driver_name": self.driver_name,
            "visible_properties": dict(self.visible_properties),
        }

# =============================================================================
# TABLA DE MANEJADORES
# =============================================================================

class HandlerRegistry:
    """
    Mantiene los metadatos de cada clase de dispositivo y el número de
    dispositivos conectados por clase.
    """
    def __init__(self):
        self.active_counts: Dict[DeviceClass, int] = {device_class: 0 for device_class in DeviceClass}

    def handler_name(self, device_class: DeviceClass) -> str:
        return DEVICE_PROFILES[device_class].handler_name

    def operations_for(self, device_class: DeviceClass) -> Tuple[OperationKind, ...]:
        return tuple(DEVICE_PROFILES[device_class].capabilities)

    def capabilities_for(self, device_class: DeviceClass) -> Tuple[str, ...]:
        return tuple(DEVICE_PROFILES[device_class].capabilities.values())

    def active_count(self, device_class: DeviceClass) -> int:
        return self.active_counts[device_class]

    def increment(self, device_class: DeviceClass) -> int:
        self.active_counts[device_class] += 1
        return self.active_counts[device_class]

    def decrement(self, device_class: DeviceClass) -> int:
        if self.active_counts[device_class] > 0:
            self.active_counts[device_class] -= 1
        else:
            logger.warning(f"Contador de {device_class.value} ya está en 0")
        return self.active_counts[device_class]

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [
            {
                "device_class": device_class.value,
                "handler_name": self.handler_name(device_class),
                "operations": [kind.name for kind in self.operations_for(device_class)],
                "capabilities": list(self.capabilities_for(device_class)),
                "active_count": self.active_count(device_class),
            }
            for device_class in DeviceClass
        ]

# =============================================================================
# COLA GLOBAL DE OPERACIONES
# =============================================================================

class OperationQueue:
    """
    Registro global de todas las operaciones emitidas, indexado por ID y en
    orden de creación. Se usa para las vistas y las consultas de estado.

    Los métodos mark_* solo actualizan el registro de la operación y son de uso
    interno del DeviceManager: no tocan el error_flag del dispositivo. Las
    transiciones que afectan al dispositivo pasan por Device.complete,
    Device.fail y Device.cancel_pending.
    """
    def __init__(self, clock: Callable[[], float]):
        self._clock = clock
        self._operations: Dict[str, Operation] = {}

    def __len__(self):
        return len(self._operations)

    def __iter__(self) -> Iterator[Operation]:
        return iter(list(self._operations.values()))

    def __contains__(self, operation_id: str):
        return operation_id in self._operations

    def record(self, operation: Operation):
        self._operations[operation.operation_id] = operation

    def get(self, operation_id: str) -> Optional[Operation]:
        return self._operations.get(operation_id)

    def mark_completed(self, operation_id: str) -> bool:
        operation = self._operations.get(operation_id)
        return operation is not None and operation.mark_completed(self._clock())

    def mark_failed(self, operation_id: str) -> bool:
        operation = self._operations.get(operation_id)
        return operation is not None and operation.mark_failed(self._clock())

    def mark_cancelled(self, operation_id: str) -> bool:
        operation = self._operations.get(operation_id)
        return operation is not None and operation.mark_cancelled(self._clock())

    def recent_first(self, n: int) -> List[Operation]:
        """Devolver las n operaciones creadas más recientemente"""
        if n <= 0:
            return []
        ordered = list(enumerate(self._operations.values()))
        ordered.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [operation for _, operation in ordered[:n]]

    def for_device(self, device_id: str) -> List[Operation]:
        return [op for op in self._operations.values() if op.device_id == device_id]

    def count_by_status(self) -> Dict[OperationStatus, int]:
        counts = {status: 0 for status in OperationStatus}
        for operation in self._operations.values():
            counts[operation.status] += 1
        return counts
