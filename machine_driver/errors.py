class DriverError(RuntimeError):
    pass


class HypervisorConnectionError(DriverError):
    def __init__(self, *, host: str, user: str, realm: str, detail: str):
        self.host = host
        self.user = user
        self.realm = realm
        self.detail = detail
        super().__init__(
            f"could not connect to host '{host}' with '{user}@{realm}': {detail}"
        )


class HypervisorAPIError(DriverError):
    def __init__(
        self,
        *,
        operation: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.operation = operation
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{operation} failed: {detail}")


class RemoteAllocationError(HypervisorAPIError):
    pass


class RemoteSubmissionError(HypervisorAPIError):
    pass


class UnsupportedStorageFormatError(DriverError):
    def __init__(self, storage_format: str, backend: str | None = None, storage: str | None = None):
        self.storage_format = storage_format
        self.backend = backend
        self.storage = storage
        if backend is None:
            message = f"storage type '{storage_format}' is not supported"
        else:
            message = (
                f"type '{backend}' on storage '{storage}' does only support raw, "
                f"got '{storage_format}'"
            )
        super().__init__(message)


class KeyIOError(DriverError):
    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"failed to persist key pair at {path}: {detail}")


class InvalidTransitionError(DriverError):
    def __init__(self, machine_name: str, current: str, target: str):
        self.machine_name = machine_name
        self.current = current
        self.target = target
        super().__init__(
            f"machine {machine_name} cannot move from {current} to {target}"
        )


class ProvisioningTimeoutError(DriverError):
    pass


class GuestUnreachableTimeout(ProvisioningTimeoutError):
    def __init__(self, vmid: str, attempts: int, elapsed_sec: float):
        self.vmid = vmid
        self.attempts = attempts
        self.elapsed_sec = elapsed_sec
        super().__init__(
            f"guest agent of vm {vmid} did not answer after {attempts} probes "
            f"in {elapsed_sec:.1f}s"
        )


class ProvisioningCancelled(DriverError):
    pass


class TrustInjectionError(DriverError):
    kind = "unknown"

    def __init__(self, target: str, detail: str):
        self.target = target
        self.detail = detail
        super().__init__(f"trust injection into {target} failed ({self.kind}): {detail}")


class TrustAuthError(TrustInjectionError):
    kind = "auth"


class TrustTransportError(TrustInjectionError):
    kind = "transport"


class RemoteWriteRejectedError(TrustInjectionError):
    kind = "remote_write_rejected"
