"""Error taxonomy shared by the repositories, the auth service and the API.

Every error carries a stable ``code`` (for clients) and a German
``user_message`` shown in the dashboard and the mobile app.
"""


class PortalError(Exception):
    code = "error"
    user_message = "Ein unerwarteter Fehler ist aufgetreten."
    status_code = 400

    def __init__(self, detail: str = None):
        self.detail = detail or self.user_message
        super().__init__(self.detail)


# authentication

class AuthError(PortalError):
    code = "auth/error"
    status_code = 401


class InvalidCredentialsError(AuthError):
    code = "auth/wrong-password"
    user_message = "Falsches Passwort."


class UserNotFoundError(AuthError):
    code = "auth/user-not-found"
    user_message = "Kein Benutzer mit dieser E-Mail-Adresse gefunden."


class WeakPasswordError(AuthError):
    code = "auth/weak-password"
    user_message = "Das Passwort ist zu schwach."
    status_code = 400


class EmailAlreadyInUseError(AuthError):
    code = "auth/email-already-in-use"
    user_message = "Diese E-Mail-Adresse wird bereits verwendet."
    status_code = 409


class InvalidEmailError(AuthError):
    code = "auth/invalid-email"
    user_message = "Ungültige E-Mail-Adresse."
    status_code = 400


class TooManyRequestsError(AuthError):
    code = "auth/too-many-requests"
    user_message = "Zu viele Anmeldeversuche. Bitte später erneut versuchen."
    status_code = 429


class NotAuthorizedError(AuthError):
    code = "auth/not-authorized"
    user_message = "Für dieses Konto besteht kein Zugang. Bitte erneut anmelden."


# authorization / connectivity

class PermissionDeniedError(PortalError):
    code = "permission-denied"
    user_message = "Keine Berechtigung für diese Aktion."
    status_code = 403


class ConnectivityError(PortalError):
    code = "unavailable"
    user_message = "Verbindung zum Server fehlgeschlagen. Bitte erneut versuchen."
    status_code = 503


# validation / lookup

class ValidationError(PortalError):
    code = "invalid-argument"
    user_message = "Bitte alle Pflichtfelder ausfüllen."
    status_code = 422


class NotFoundError(PortalError):
    code = "not-found"
    user_message = "Eintrag nicht gefunden."
    status_code = 404


class InvalidTransitionError(PortalError):
    code = "invalid-transition"
    user_message = "Abgeschlossene oder stornierte Aufträge können nicht mehr geändert werden."
    status_code = 409


# invitations

class InvitationError(PortalError):
    code = "invitation/error"


class InvitationNotFoundError(InvitationError):
    code = "invitation/not-found"
    user_message = "Einladung nicht gefunden oder ungültig."
    status_code = 404


class InvitationAlreadyAcceptedError(InvitationError):
    code = "invitation/already-accepted"
    user_message = "Diese Einladung wurde bereits angenommen."
    status_code = 409


class InvitationExpiredError(InvitationError):
    code = "invitation/expired"
    user_message = "Diese Einladung ist abgelaufen."
    status_code = 410
