from flask import request
from marshmallow import ValidationError


# ============================================
# API 錯誤類別
# ============================================

class APIError(Exception):
    """所有業務錯誤的基底類別,由 app 的 errorhandler 轉成 JSON"""

    status_code = 500
    error = 'internal_server_error'
    message = 'An internal error occurred'

    def __init__(self, message=None, details=None):
        self.message = message or self.__class__.message
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        body = {'error': self.error, 'message': self.message}
        if self.details:
            body['details'] = self.details
        return body


class ValidationFailed(APIError):
    status_code = 400
    error = 'validation_error'
    message = 'Validation failed'


class AuthError(APIError):
    status_code = 401
    error = 'authentication_failed'
    message = 'Invalid credentials'


class ForbiddenError(APIError):
    status_code = 403
    error = 'forbidden'
    message = 'Permission denied'


class NotFoundError(APIError):
    status_code = 404
    error = 'not_found'
    message = 'Resource not found'


class ConflictError(APIError):
    status_code = 409
    error = 'conflict'
    message = 'Resource already exists'


class ExpiredError(APIError):
    status_code = 400
    error = 'expired'
    message = 'Invitation has expired'


# ============================================
# Input Validation
# ============================================

def load_json(schema_class, required=True):
    """
    用 marshmallow schema 驗證 request body

    驗證失敗時丟出 ValidationFailed,由全域 errorhandler 回傳 400
    """
    data = request.get_json(silent=True)
    if data is None and not required:
        data = {}
    if data is None:
        raise ValidationFailed('Request body must be JSON')

    try:
        return schema_class().load(data)
    except ValidationError as err:
        raise ValidationFailed(details=err.messages) from err
