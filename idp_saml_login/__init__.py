from .idp_saml_login import (
    FederatedLoginError,
    FederatedLoginFlow,
    LoginCancelled,
    LoginSession,
    OriginMismatch,
    PostbackInvalid,
    PostbackNotFound,
    RemoteRejected,
)
