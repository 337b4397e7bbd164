"""ストリームパイプラインの例外."""


class StreamError(Exception):
    """stream-webpage の基底例外."""


class ConfigurationError(StreamError, ValueError):
    """起動時に回復できない設定エラー.

    解像度・フレームレートの不正値は警告付きでデフォルトに正規化されるため、
    この例外にはならない。
    """


class NavigationError(StreamError, RuntimeError):
    """ブラウザが制限時間内にページを表示できなかった."""


class SpawnError(StreamError, RuntimeError):
    """エンコーダプロセスを起動できなかった."""


class UnexpectedExit(StreamError, RuntimeError):
    """エンコーダがキャンセル以外の理由で終了した."""

    def __init__(self, returncode: int | None):
        self.returncode = returncode
        super().__init__(f"Encoder exited unexpectedly (returncode={returncode})")


class ExternalQueryError(StreamError, RuntimeError):
    """配信ステータス API の問い合わせに失敗した."""
