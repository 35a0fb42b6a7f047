class CompilerError(Exception):
    pass


class InitializationError(CompilerError):
    pass


class DefinitionNotFound(CompilerError):
    pass


class InvalidElementPath(CompilerError):
    pass


class UnsupportedShape(CompilerError):
    pass
