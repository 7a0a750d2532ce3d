#!/usr/bin/env python3

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from rich.console import Console

err_console = Console(stderr=True)

DEFAULT_API_BASE_URL = "https://api.cloudflare.com/client/v4"
API_REQUEST_TIMEOUT = 10.0


class CloudchamberError(Exception):
    """Cloudchamber CLI에서 사용자에게 보고할 오류의 공통 부모."""


class ConfigError(CloudchamberError):
    """인증/계정 설정이 비어 있거나 잘못된 경우."""


class ApiError(CloudchamberError):
    """API가 2xx 이외의 응답을 반환한 경우."""

    def __init__(self, status: int, body: Any, url: str) -> None:
        super().__init__(f"{url}: HTTP {status}: {_describe_error_body(body)}")
        self.status = status
        self.body = body
        self.url = url


class RequestFailed(CloudchamberError):
    """네트워크 단에서 요청이 실패한 경우."""


def _describe_error_body(body: Any) -> str:
    if isinstance(body, dict):
        errors = body.get("errors") or []
        messages = [
            str(item.get("message"))
            for item in errors
            if isinstance(item, dict) and item.get("message")
        ]
        if messages:
            return "; ".join(messages)
        if body.get("error"):
            return str(body["error"])
    if body in (None, ""):
        return "empty response"
    return str(body)


def _normalize_attr_key(key: Any) -> str:
    """camelCase / snake_case 키를 같은 이름으로 취급하기 위한 정규화."""
    text = key if isinstance(key, str) else str(key)
    return "".join(ch for ch in text if ch.isalnum()).lower()


class AttrDict:
    """API JSON 응답을 속성 접근 방식으로 다룰 수 있게 감싸는 래퍼."""

    __slots__ = ("_data", "_key_map")

    def __init__(self, data: Dict[str, Any]) -> None:
        self._data = data
        key_map: Dict[str, str] = {}
        for original_key in data:
            key_map.setdefault(_normalize_attr_key(original_key), original_key)
        self._key_map = key_map

    def _lookup(self, key: str) -> Optional[str]:
        actual_key = self._key_map.get(_normalize_attr_key(key))
        if actual_key is None or actual_key not in self._data:
            return None
        return actual_key

    def __getattr__(self, item: str) -> Any:
        if item.startswith("__"):
            raise AttributeError(item)
        actual_key = self._lookup(item)
        if actual_key is None:
            return None
        return wrap_payload(self._data[actual_key])

    def __getitem__(self, key: str) -> Any:
        actual_key = self._lookup(key)
        if actual_key is None:
            raise KeyError(key)
        return wrap_payload(self._data[actual_key])

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self._lookup(key) is not None

    def __eq__(self, other: object) -> bool:
        if isinstance(other, AttrDict):
            return self._data == other._data
        if isinstance(other, dict):
            return self._data == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"AttrDict({self._data!r})"

    def get(self, key: str, default: Any = None) -> Any:
        actual_key = self._lookup(key)
        if actual_key is None:
            return default
        return wrap_payload(self._data[actual_key])

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def wrap_payload(value: Any) -> Any:
    if isinstance(value, dict):
        return AttrDict(value)
    if isinstance(value, list):
        return [wrap_payload(item) for item in value]
    return value


def unwrap_payload(value: Any) -> Any:
    """AttrDict를 JSON 직렬화 가능한 원본 구조로 되돌린다."""
    if isinstance(value, AttrDict):
        return value.to_dict()
    if isinstance(value, list):
        return [unwrap_payload(item) for item in value]
    return value


@dataclass(frozen=True)
class CloudchamberConfig:
    """Cloudchamber API 접속 정보."""

    api_url: str
    account_id: str
    api_token: str
    timeout: float = API_REQUEST_TIMEOUT
    debug: bool = False

    @classmethod
    def from_env(cls, *, debug: bool = False) -> "CloudchamberConfig":
        """
        환경 변수에서 접속 정보를 읽는다.
        CLOUDCHAMBER_API_URL이 있으면 계정 경로 조합 없이 그대로 사용한다.
        """
        token = os.environ.get("CLOUDFLARE_API_TOKEN", "").strip()
        account_id = os.environ.get("CLOUDFLARE_ACCOUNT_ID", "").strip()
        override = os.environ.get("CLOUDCHAMBER_API_URL", "").strip()
        if not token:
            raise ConfigError(
                "CLOUDFLARE_API_TOKEN is not set. Export an API token to use cloudchamber."
            )
        if override:
            api_url = override.rstrip("/")
        else:
            if not account_id:
                raise ConfigError(
                    "CLOUDFLARE_ACCOUNT_ID is not set. Export the account id to use cloudchamber."
                )
            base = os.environ.get("CLOUDFLARE_API_BASE_URL", DEFAULT_API_BASE_URL)
            api_url = f"{base.rstrip('/')}/accounts/{account_id}/cloudchamber"
        raw_timeout = os.environ.get("CLOUDCHAMBER_TIMEOUT", "")
        try:
            timeout = float(raw_timeout) if raw_timeout else API_REQUEST_TIMEOUT
        except ValueError:
            raise ConfigError(
                f"CLOUDCHAMBER_TIMEOUT must be a number, got {raw_timeout!r}"
            ) from None
        return cls(
            api_url=api_url,
            account_id=account_id,
            api_token=token,
            timeout=max(timeout, 1.0),
            debug=debug,
        )


class CloudchamberClient:
    """Deployment / Placement 조회용 읽기 전용 클라이언트."""

    def __init__(
        self,
        config: CloudchamberConfig,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.config = config
        self._http = httpx.Client(
            base_url=config.api_url,
            headers={
                "Authorization": f"Bearer {config.api_token}",
                "Accept": "application/json",
            },
            timeout=config.timeout,
            transport=transport,
        )

    def __enter__(self) -> "CloudchamberClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        if self.config.debug:
            query = "&".join(f"{key}={value}" for key, value in (params or {}).items())
            suffix = f"?{query}" if query else ""
            err_console.print(f"GET {self.config.api_url}{path}{suffix}", style="dim")
        try:
            response = self._http.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise RequestFailed(f"GET {path} timed out: {exc}") from exc
        except httpx.RequestError as exc:
            raise RequestFailed(f"GET {path} failed: {exc}") from exc
        return self._handle_response(response)

    @staticmethod
    def _handle_response(response: httpx.Response) -> Any:
        try:
            body: Any = response.json() if response.content else None
        except ValueError:
            body = response.text
        if response.is_error:
            raise ApiError(response.status_code, body, str(response.request.url))
        # Cloudflare v4 envelope: {"success": ..., "result": ...}
        if isinstance(body, dict) and "result" in body and "success" in body:
            if not body.get("success"):
                raise ApiError(response.status_code, body, str(response.request.url))
            return body["result"]
        return body

    def get_me(self) -> AttrDict:
        """현재 토큰이 가리키는 계정 정보를 조회한다."""
        payload = self._get("/me")
        return wrap_payload(payload or {})

    def list_deployments(
        self,
        location: Optional[str] = None,
        image: Optional[str] = None,
        state: Optional[str] = None,
        ipv4: Optional[str] = None,
    ) -> List[AttrDict]:
        """필터 조건에 맞는 deployment 목록. 값이 없는 필터는 전송하지 않는다."""
        filters = {"location": location, "image": image, "state": state, "ipv4": ipv4}
        params = {key: value for key, value in filters.items() if value}
        payload = self._get("/deployments/v2", params=params or None)
        return list(wrap_payload(payload or []))

    def get_deployment(self, deployment_id: str) -> AttrDict:
        """ID로 deployment 하나를 조회한다. list 명령은 사용하지 않는 클라이언트 API."""
        payload = self._get(f"/deployments/{deployment_id}/v2")
        return wrap_payload(payload or {})

    def list_placements(self, deployment_id: str) -> List[AttrDict]:
        """deployment에 속한 placement와 각 placement의 이벤트 이력."""
        payload = self._get(f"/deployments/{deployment_id}/placements")
        return list(wrap_payload(payload or []))
