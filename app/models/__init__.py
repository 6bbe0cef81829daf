from app.models.directory import Team, UserRecord  # noqa: F401
from app.models.page import Page  # noqa: F401
from app.models.saved_filter import SavedFilter  # noqa: F401
