from authlib.oauth2 import OAuth2Error


class InvalidTargetError(OAuth2Error):
    """RFC 8707: the requested resource or audience is invalid or unsupported."""

    error = 'invalid_target'
