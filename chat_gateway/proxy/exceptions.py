SYSTEM_ERROR = (-1000, "Internal system error")
SYSTEM_REQUEST_VALIDATION_ERROR = (-1001, "Request validation failed")
SYSTEM_NOT_ROUTE_MATCHING = (-1002, "The requested endpoint was not found")

API_INVALID_API_KEY = (-2001, "Invalid API key")
API_EXPIRED_API_KEY = (-2002, "API key has expired")
API_PERMISSION_DENIED = (-2003, "Permission denied")
API_RATE_LIMIT_EXCEEDED = (-2004, "Rate limit exceeded")
API_QUOTA_EXCEEDED = (-2005, "Quota exceeded")
API_MODEL_NOT_FOUND = (-2006, "Model not found")
API_CONTEXT_LENGTH_EXCEEDED = (-2007, "Context length exceeded")
API_SERVICE_UNAVAILABLE = (-2008, "Service temporarily unavailable")
API_TIMEOUT = (-2009, "Request timed out")
API_CONNECTION_ERROR = (-2010, "Connection error")
API_INTERNAL_ERROR = (-2011, "Internal server error")
API_INVALID_REQUEST = (-2012, "Invalid request format")
API_MISSING_REQUIRED_PARAM = (-2013, "Missing required parameter")

API_FILE_NOT_FOUND = (-2100, "File not found")
API_FILE_READ_ERROR = (-2101, "File read error")
API_FILE_FORMAT_ERROR = (-2102, "File format error")
API_FILE_UPLOAD_ERROR = (-2103, "File upload error")
API_FILE_DOWNLOAD_ERROR = (-2104, "File download error")
API_FILE_PROCESSING_ERROR = (-2105, "File processing error")


class APIException(Exception):
    """Error carrying an internal error code.

    ``exception`` is one of the ``(code, default message)`` pairs above. A
    ``message`` overrides the default text; ``http_status`` overrides the status
    the error mapper would pick from its table.
    """

    def __init__(self, exception, message=None, http_status=None, data=None):
        errcode, default_message = exception
        self.errcode = errcode
        self.errmsg = message or default_message
        self.http_status = http_status
        self.data = data
        super().__init__(self.errmsg)
