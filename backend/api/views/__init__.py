from api.views.auth_handlers import (
    list_sessions as list_sessions,
)
from api.views.auth_handlers import (
    refresh_token as refresh_token,
)
from api.views.auth_handlers import (
    request_password_reset as request_password_reset,
)
from api.views.auth_handlers import (
    reset_password as reset_password,
)
from api.views.auth_handlers import (
    signin as signin,
)
from api.views.auth_handlers import (
    signin_with_google as signin_with_google,
)
from api.views.auth_handlers import (
    signout as signout,
)
from api.views.auth_handlers import (
    signup as signup,
)
from api.views.auth_handlers import (
    verify_email as verify_email,
)
