class VcallTracerError(Exception):
    pass


class ConfigError(VcallTracerError):
    pass


class LldbUnavailableError(VcallTracerError):
    pass


class ImageLoadError(VcallTracerError):
    def __init__(self, path, reason=None):
        self.path = path
        msg = f'Could not load binary image {path}'
        if reason:
            msg += f': {reason}'
        super().__init__(msg)


class LaunchError(VcallTracerError):
    pass


class SessionLostError(VcallTracerError):
    pass


class SequencingError(VcallTracerError):
    pass


class TypeRegistrationError(VcallTracerError):
    def __init__(self, name, reason):
        self.name = name
        super().__init__(f'Could not register type {name}: {reason}')


class StoreError(VcallTracerError):
    pass
