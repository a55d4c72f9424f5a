"""Provider 凭据读取接口。

核心只消费 load(provider_id) -> secret | None；加密、轮换与写入由宿主负责。
"""

from typing import Dict, Optional, Protocol


class CredentialVault(Protocol):
    async def load(self, provider_id: str) -> Optional[str]:
        ...


class SettingsCredentialVault:
    """从配置（环境变量 / .env / config.yaml）中读取 {provider}_api_key。"""

    def __init__(self, settings):
        self._settings = settings

    async def load(self, provider_id: str) -> Optional[str]:
        if hasattr(self._settings, "api_key_for"):
            return self._settings.api_key_for(provider_id)
        return getattr(self._settings, f"{provider_id.lower()}_api_key", None)


class MemoryCredentialVault:
    """进程内凭据表，宿主可以在运行时写入（最后一次写入生效）。"""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = {k.lower(): v for k, v in (secrets or {}).items()}

    def store(self, provider_id: str, secret: Optional[str]) -> None:
        if secret:
            self._secrets[provider_id.lower()] = secret
        else:
            self._secrets.pop(provider_id.lower(), None)

    async def load(self, provider_id: str) -> Optional[str]:
        return self._secrets.get(provider_id.lower())


class ChainedCredentialVault:
    """依次查询多个凭据来源，返回第一个非空结果。"""

    def __init__(self, *vaults: CredentialVault):
        self._vaults = vaults

    async def load(self, provider_id: str) -> Optional[str]:
        for vault in self._vaults:
            secret = await vault.load(provider_id)
            if secret:
                return secret
        return None
