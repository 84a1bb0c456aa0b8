class CoverageError(Exception):
    pass


class MissingTextSectionError(CoverageError):
    def __init__(self, path, message="missing text section"):
        super().__init__(f"{message} in {path}")
        self.path = path


class SymbolTableError(CoverageError):
    pass


class RelocationError(CoverageError):
    pass


class DebugInfoError(CoverageError):
    pass


class UnknownArchError(CoverageError):
    def __init__(self, arch):
        super().__init__(f"unknown target architecture: {arch}")
        self.arch = arch
