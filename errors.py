class GridletError(RuntimeError):
    """Base class for every fatal Gridlet failure.

    A rejected login is not one of these: create_session returns None for it.
    """
