"""Custom exceptions for the ElastiCache provisioner."""

from typing import Optional

EXIT_GENERIC = 1
EXIT_CONFIGURATION = 2
EXIT_NOT_FOUND = 3
EXIT_WAIT_TIMEOUT = 4
EXIT_CONFIGURATION_CONFLICT = 5
EXIT_ALREADY_EXISTS = 6
EXIT_STATE_CONFLICT = 7


class AWSBaseError(Exception):
    """Base exception for provisioner errors."""

    exit_code: int = EXIT_GENERIC

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        """Initialize provisioner error.

        Args:
            message: Error message in Chinese
            suggestion: Suggested solution in Chinese
            original_error: Original exception for debugging
        """
        self.message = message
        self.suggestion = suggestion
        self.original_error = original_error
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format error message."""
        msg = self.message
        if self.suggestion:
            msg += f"\n建議：{self.suggestion}"
        return msg


class AWSPermissionError(AWSBaseError):
    """Exception raised when AWS permissions are insufficient."""

    def __init__(
        self,
        operation: str,
        original_error: Optional[Exception] = None
    ):
        message = f"權限不足：您的 AWS Profile 沒有 {operation} 權限"
        suggestion = "請確認 IAM 角色具有 elasticache:Create*、Delete*、Modify* 與 Describe* 權限"
        super().__init__(message, suggestion, original_error)


class AWSInvalidParameterError(AWSBaseError):
    """Exception raised when AWS API parameters are invalid."""

    def __init__(
        self,
        operation: str,
        error_message: str,
        original_error: Optional[Exception] = None
    ):
        message = f"無效的參數：{operation} 失敗：{error_message}"
        suggestion = "請檢查部署設定檔中的參數值是否正確"
        super().__init__(message, suggestion, original_error)


class AWSAPIError(AWSBaseError):
    """Exception raised for general AWS API errors."""

    def __init__(
        self,
        operation: str,
        error_code: str,
        error_message: str,
        original_error: Optional[Exception] = None
    ):
        """Initialize API error.

        Args:
            operation: AWS operation that failed
            error_code: AWS error code
            error_message: AWS error message
            original_error: Original exception
        """
        self.operation = operation
        self.error_code = error_code
        message = f"AWS API 錯誤：{operation} 失敗 ({error_code}): {error_message}"
        suggestion = "請檢查 AWS 服務狀態或稍後重試"
        super().__init__(message, suggestion, original_error)


class AWSCredentialsError(AWSBaseError):
    """Exception raised when AWS credentials are missing or invalid."""

    def __init__(self, original_error: Optional[Exception] = None):
        message = "AWS 認證錯誤：找不到有效的 AWS 認證"
        suggestion = (
            "請確認已設定 AWS CLI 或環境變數 (AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY)"
        )
        super().__init__(message, suggestion, original_error)


class AWSConnectionError(AWSBaseError):
    """Exception raised when connection to AWS fails."""

    def __init__(
        self,
        region: str,
        original_error: Optional[Exception] = None
    ):
        message = f"AWS 連線錯誤：無法連線到 {region}"
        suggestion = "請檢查網路連線和 Region 名稱是否正確"
        super().__init__(message, suggestion, original_error)


class ResourceNotFoundError(AWSBaseError):
    """Exception raised when a referenced cluster, instance or parameter group is absent."""

    exit_code = EXIT_NOT_FOUND

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        operation: str,
        original_error: Optional[Exception] = None
    ):
        """Initialize not-found error.

        Args:
            resource_type: Kind of resource (e.g., "replication group")
            resource_id: Identifier of the missing resource
            operation: Operation that referenced the resource
            original_error: Original exception
        """
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.operation = operation
        message = f"找不到資源：{resource_type} [{resource_id}] 不存在 (操作：{operation})"
        suggestion = "資源可能已在此工具之外被刪除，請確認狀態檔或重新部署"
        super().__init__(message, suggestion, original_error)


class ResourceAlreadyExistsError(AWSBaseError):
    """Exception raised when a creation targets a name that is already in use."""

    exit_code = EXIT_ALREADY_EXISTS

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        operation: str,
        original_error: Optional[Exception] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.operation = operation
        message = f"資源已存在：{resource_type} [{resource_id}] 名稱已被使用 (操作：{operation})"
        suggestion = "請確認沒有其他部署使用相同名稱，或清除狀態檔中的 identifier 後重試"
        super().__init__(message, suggestion, original_error)


class WaitTimeoutError(AWSBaseError):
    """Exception raised when a polled resource does not reach its target condition in time."""

    exit_code = EXIT_WAIT_TIMEOUT

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        condition: str,
        original_error: Optional[Exception] = None
    ):
        """Initialize wait-timeout error.

        Args:
            resource_type: Kind of resource being polled
            resource_id: Identifier of the polled resource
            condition: Target condition (e.g., "available", "deleted")
            original_error: Original exception
        """
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.condition = condition
        message = f"等待逾時：{resource_type} [{resource_id}] 未在時限內達到 {condition} 狀態"
        suggestion = "已完成的步驟皆已記錄於狀態檔，請稍後重新執行相同指令以繼續"
        super().__init__(message, suggestion, original_error)


class ConfigurationConflictError(AWSBaseError):
    """Exception raised when an attribute cannot be modified in place."""

    exit_code = EXIT_CONFIGURATION_CONFLICT

    def __init__(self, resource_id: str, operation: str, detail: str):
        self.resource_id = resource_id
        self.operation = operation
        message = f"設定衝突：無法對 [{resource_id}] 執行 {operation}：{detail}"
        suggestion = "請在更新設定中提供替代的參數群組名稱"
        super().__init__(message, suggestion)


class ConfigurationError(AWSBaseError):
    """Exception raised when the configuration file is malformed."""

    exit_code = EXIT_CONFIGURATION

    def __init__(self, detail: str, original_error: Optional[Exception] = None):
        message = f"設定檔錯誤：{detail}"
        suggestion = "請檢查 YAML 設定檔內容"
        super().__init__(message, suggestion, original_error)


class StateConflictError(AWSBaseError):
    """Exception raised when the persisted state was changed by someone else."""

    exit_code = EXIT_STATE_CONFLICT

    def __init__(self, path: str, expected_version: int, actual_version: int):
        self.expected_version = expected_version
        self.actual_version = actual_version
        message = (
            f"狀態衝突：狀態檔 {path} 的版本為 {actual_version}，"
            f"預期為 {expected_version}"
        )
        suggestion = "可能有其他程序同時修改此叢集，請確認後重新執行"
        super().__init__(message, suggestion)
