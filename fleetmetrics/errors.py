"""Exception taxonomy for fleet metrics computations."""


class FleetMetricsError(Exception):
    """Base class for all engine errors."""


class VehicleNotFoundError(FleetMetricsError):
    """Referenced vehicle (or its device) does not exist. Units skip, never retry."""

    def __init__(self, vehicle_id):
        super().__init__(f"vehicle {vehicle_id} not found")
        self.vehicle_id = vehicle_id


class TaskNotFoundError(FleetMetricsError):
    def __init__(self, task_id):
        super().__init__(f"task {task_id} not found")
        self.task_id = task_id


class TransientIOError(FleetMetricsError):
    """Point source or sink I/O failure that is worth retrying."""


class ComputationCancelled(FleetMetricsError):
    """Raised at a checkpoint once the owning fleet run has been cancelled."""


class UnitTimeoutError(FleetMetricsError):
    """Raised at a checkpoint once a unit attempt has run past its deadline."""


class VehicleLockedError(FleetMetricsError):
    """Another computation holds the vehicle lock and the bounded wait elapsed."""

    def __init__(self, vehicle_id):
        super().__init__(f"vehicle {vehicle_id} is locked by another computation")
        self.vehicle_id = vehicle_id


class UnorderedSamplesError(FleetMetricsError, ValueError):
    """Point source yielded samples out of timestamp order."""
