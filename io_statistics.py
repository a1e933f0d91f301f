"""
Estadísticas de la cola de operaciones

Cálculo de métricas sobre las operaciones registradas (conteos por estado,
tasa de éxito, latencias de finalización), exportación a JSON y generación de
operaciones aleatorias para la simulación.
"""

import json
import random
from typing import Any, Dict, List, Optional

import numpy as np

from io_devices import Operation, OperationKind, OperationStatus, logger


def compute_statistics(operations: List[Operation], now: float) -> Dict[str, Any]:
    """Calcular métricas globales sobre una lista de operaciones"""
    counts = {status.name: 0 for status in OperationStatus}
    for operation in operations:
        counts[operation.status.name] += 1

    durations = np.array([op.duration() for op in operations
                          if op.status == OperationStatus.COMPLETED and op.duration() is not None],
                         dtype=float)
    pending_ages = np.array([op.age(now) for op in operations if op.is_pending], dtype=float)

    finished = counts["COMPLETED"] + counts["FAILED"]
    success_rate = (counts["COMPLETED"] / finished) * 100 if finished > 0 else 0.0

    if durations.size:
        latency = {
            "mean": float(np.mean(durations)),
            "median": float(np.median(durations)),
            "p95": float(np.percentile(durations, 95)),
            "max": float(np.max(durations)),
        }
    else:
        latency = {"mean": 0.0, "median": 0.0, "p95": 0.0, "max": 0.0}

    return {
        "total": len(operations),
        "by_status": counts,
        "success_rate": success_rate,
        "latency": latency,
        "pending_mean_age": float(np.mean(pending_ages)) if pending_ages.size else 0.0,
    }


def export_statistics(manager, file_path: str) -> Dict[str, Any]:
    """Exportar la instantánea del gestor y todas las operaciones a un archivo JSON"""
    snapshot = manager.snapshot()
    now = manager.clock()
    stats = {
        "snapshot": snapshot,
        "operations": [op.to_dict(now) for op in manager.queue],
    }

    with open(file_path, 'w') as f:
        json.dump(stats, f, indent=4)

    logger.info(f"Estadísticas exportadas a {file_path}")
    return stats


def generate_random_operations(manager, count: Optional[int] = None,
                               rng: Optional[random.Random] = None) -> List[str]:
    """Generar operaciones aleatorias para todos los dispositivos conectados"""
    rng = rng or random.Random()
    connected = manager.connected_devices()
    if not connected:
        logger.warning("No se encontraron dispositivos conectados")
        return []

    num_operations = count if count is not None else rng.randint(5, 15)
    operation_ids = []
    for _ in range(num_operations):
        device = rng.choice(connected)
        kind = rng.choice(list(OperationKind))
        payload = f"bloque_{rng.randint(0, 1000000)}" if kind == OperationKind.WRITE else None
        operation_ids.append(manager.submit_operation(device.device_id, kind, payload))

    logger.info(f"Se generaron {num_operations} operaciones aleatorias")
    return operation_ids
