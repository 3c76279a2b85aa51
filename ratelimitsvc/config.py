"""Loading rate limit configuration documents and looking up limits."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

import yaml

from .model import (
    RateLimit,
    RateLimitConfigError,
    RateLimitConfigToLoad,
    RateLimitDescriptor,
    StatsManager,
    Unit,
    new_rate_limit,
)

logger = logging.getLogger(__name__)

_VALID_KEYS = frozenset(
    {
        "domain",
        "key",
        "value",
        "descriptors",
        "rate_limit",
        "unit",
        "requests_per_unit",
        "unlimited",
        "shadow_mode",
        "name",
        "replaces",
        "detailed_metric",
    }
)


@dataclass
class YamlReplaces:
    name: str = ""


@dataclass
class YamlRateLimit:
    requests_per_unit: int = 0
    unit: str = ""
    unlimited: bool = False
    name: str = ""
    replaces: list[YamlReplaces] = field(default_factory=list)


@dataclass
class YamlDescriptor:
    key: str = ""
    value: str = ""
    rate_limit: Optional[YamlRateLimit] = None
    descriptors: list[YamlDescriptor] = field(default_factory=list)
    shadow_mode: bool = False
    include_metrics_for_unspecified_value: bool = False


@dataclass
class YamlRoot:
    domain: str = ""
    descriptors: list[YamlDescriptor] = field(default_factory=list)


def _config_error(name: str, text: str) -> RateLimitConfigError:
    return RateLimitConfigError(f"{name}: {text}")


class _DecodeError(Exception):
    pass


def _format(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    return str(value)


def _kind(value: Any) -> str:
    return type(value).__name__


def _validate_yaml_keys(file_name: str, config_map: Mapping) -> None:
    for key, value in config_map.items():
        if not isinstance(key, str):
            raise _config_error(
                file_name, f"config error, key is not of type string: {_format(key)}"
            )
        if key not in _VALID_KEYS:
            raise _config_error(file_name, f"config error, unknown key '{key}'")
        if isinstance(value, list):
            for element in value:
                if not isinstance(element, dict):
                    raise _config_error(
                        file_name,
                        "config error, yaml file contains list of type other than map: "
                        f"{_format(element)}",
                    )
                _validate_yaml_keys(file_name, element)
        elif isinstance(value, dict):
            _validate_yaml_keys(file_name, value)
        elif value is None or isinstance(value, (str, int, datetime.date)):
            continue
        else:
            raise _config_error(file_name, "error checking config")


def _as_str(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return _format(value)
    if isinstance(value, (str, int, float, datetime.date)):
        return str(value)
    raise _DecodeError(f"cannot unmarshal {_kind(value)} into string field '{where}'")


def _as_bool(value: Any, where: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise _DecodeError(f"cannot unmarshal {_format(value)} into bool field '{where}'")


def _as_uint32(value: Any, where: str) -> int:
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool) and 0 <= value < 2**32:
        return value
    raise _DecodeError(f"cannot unmarshal {_format(value)} into uint32 field '{where}'")


def _as_list(value: Any, where: str) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    raise _DecodeError(f"cannot unmarshal {_kind(value)} into list field '{where}'")


def _as_map(value: Any, where: str) -> dict:
    if isinstance(value, dict):
        return value
    raise _DecodeError(f"cannot unmarshal {_kind(value)} into map field '{where}'")


def _decode_rate_limit(value: Any) -> Optional[YamlRateLimit]:
    if value is None:
        return None
    data = _as_map(value, "rate_limit")
    return YamlRateLimit(
        requests_per_unit=_as_uint32(data.get("requests_per_unit"), "requests_per_unit"),
        unit=_as_str(data.get("unit"), "unit"),
        unlimited=_as_bool(data.get("unlimited"), "unlimited"),
        name=_as_str(data.get("name"), "name"),
        replaces=[
            YamlReplaces(name=_as_str(_as_map(item, "replaces").get("name"), "name"))
            for item in _as_list(data.get("replaces"), "replaces")
        ],
    )


def _decode_descriptor(value: Any) -> YamlDescriptor:
    data = _as_map(value, "descriptors")
    return YamlDescriptor(
        key=_as_str(data.get("key"), "key"),
        value=_as_str(data.get("value"), "value"),
        rate_limit=_decode_rate_limit(data.get("rate_limit")),
        descriptors=[
            _decode_descriptor(d) for d in _as_list(data.get("descriptors"), "descriptors")
        ],
        shadow_mode=_as_bool(data.get("shadow_mode"), "shadow_mode"),
        include_metrics_for_unspecified_value=_as_bool(
            data.get("detailed_metric"), "detailed_metric"
        ),
    )


def config_file_content_to_yaml(file_name: str, content: str) -> YamlRoot:
    """Parse and validate one YAML configuration document."""
    try:
        document = next(iter(yaml.safe_load_all(content)), None)
    except yaml.YAMLError as exc:
        raise _config_error(file_name, f"error loading config file: {exc}") from exc
    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise _config_error(
            file_name,
            f"error loading config file: cannot unmarshal {_kind(document)} into a map",
        )
    _validate_yaml_keys(file_name, document)
    try:
        return YamlRoot(
            domain=_as_str(document.get("domain"), "domain"),
            descriptors=[
                _decode_descriptor(d)
                for d in _as_list(document.get("descriptors"), "descriptors")
            ],
        )
    except _DecodeError as exc:
        raise _config_error(file_name, f"error loading config file: {exc}") from exc


def _xds_unit_name(unit: Any) -> str:
    if isinstance(unit, str):
        return unit
    return Unit(unit).name


def _xds_policy(policy: Optional[Mapping]) -> Optional[YamlRateLimit]:
    if policy is None:
        return None
    return YamlRateLimit(
        requests_per_unit=int(policy.get("requests_per_unit", 0)),
        unit=_xds_unit_name(policy.get("unit", Unit.UNKNOWN)),
        unlimited=bool(policy.get("unlimited", False)),
        name=policy.get("name", ""),
        replaces=[YamlReplaces(name=r.get("name", "")) for r in policy.get("replaces") or ()],
    )


def _xds_descriptors(items: Iterable[Mapping]) -> list[YamlDescriptor]:
    return [
        YamlDescriptor(
            key=d.get("key", ""),
            value=d.get("value", ""),
            rate_limit=_xds_policy(d.get("rate_limit")),
            descriptors=_xds_descriptors(d.get("descriptors") or ()),
            shadow_mode=bool(d.get("shadow_mode", False)),
        )
        for d in items
    ]


def config_xds_to_yaml(xds: Mapping) -> YamlRoot:
    """Convert an xDS rate limit config, given as a mapping of its proto fields, to a YamlRoot.

    The mapping holds ``domain`` and ``descriptors``; each descriptor holds ``key``,
    ``value``, ``rate_limit``, ``descriptors`` and ``shadow_mode``; a rate limit holds
    ``unit`` (a Unit, its number or its name), ``requests_per_unit``, ``unlimited``,
    ``name`` and ``replaces`` (a list of mappings with ``name``).
    """
    return YamlRoot(
        domain=xds.get("domain", ""),
        descriptors=_xds_descriptors(xds.get("descriptors") or ()),
    )


@dataclass
class _DescriptorNode:
    limit: Optional[RateLimit] = None
    descriptors: dict[str, _DescriptorNode] = field(default_factory=dict)
    wildcard_keys: list[str] = field(default_factory=list)

    def dump(self) -> str:
        parts = []
        if self.limit is not None:
            parts.append(
                f"{self.limit.full_key}: unit={self.limit.limit.unit.name} "
                f"requests_per_unit={self.limit.limit.requests_per_unit}, "
                f"shadow_mode: {_format(self.limit.shadow_mode)}\n"
            )
        parts.extend(child.dump() for child in self.descriptors.values())
        return "".join(parts)

    def load_descriptors(
        self,
        config_name: str,
        parent_key: str,
        descriptors: Iterable[YamlDescriptor],
        stats_manager: StatsManager,
    ) -> None:
        for descriptor in descriptors:
            if not descriptor.key:
                raise _config_error(config_name, "descriptor has empty key")

            final_key = descriptor.key
            if descriptor.value:
                final_key += "_" + descriptor.value
            new_parent_key = parent_key + final_key
            if final_key in self.descriptors:
                raise _config_error(
                    config_name, f"duplicate descriptor composite key '{new_parent_key}'"
                )

            rate_limit = None
            policy = descriptor.rate_limit
            if policy is not None:
                unit = Unit.__members__.get(policy.unit.upper())
                valid_unit = unit is not None and unit is not Unit.UNKNOWN
                if policy.unlimited:
                    if valid_unit:
                        raise _config_error(
                            config_name, "should not specify rate limit unit when unlimited"
                        )
                elif not valid_unit:
                    raise _config_error(
                        config_name, f"invalid rate limit unit '{policy.unit}'"
                    )

                rate_limit = new_rate_limit(
                    policy.requests_per_unit,
                    unit if unit is not None else Unit.UNKNOWN,
                    stats_manager.new_stats(new_parent_key),
                    policy.unlimited,
                    descriptor.shadow_mode,
                    policy.name,
                    [r.name for r in policy.replaces],
                    descriptor.include_metrics_for_unspecified_value,
                )
                for replaced in policy.replaces:
                    if not replaced.name:
                        raise _config_error(
                            config_name, "should not have an empty replaces entry"
                        )
                    if replaced.name == policy.name:
                        raise _config_error(
                            config_name, "replaces should not contain name of same descriptor"
                        )

            logger.debug("loading descriptor: key=%s", new_parent_key)
            node = _DescriptorNode(limit=rate_limit)
            node.load_descriptors(
                config_name, new_parent_key + ".", descriptor.descriptors, stats_manager
            )
            self.descriptors[final_key] = node
            if final_key.endswith("*"):
                self.wildcard_keys.append(final_key)


def _descriptor_key(domain: str, descriptor: RateLimitDescriptor) -> str:
    parts = [
        f"{entry.key}_{entry.value}" if entry.value else entry.key
        for entry in descriptor.entries
    ]
    return f"{domain}.{'.'.join(parts)}"


class RateLimitConfigImpl:
    """An aggregate rate limit configuration built from one or more documents."""

    def __init__(self, stats_manager: StatsManager, merge_domain_configs: bool = False):
        self._domains: dict[str, _DescriptorNode] = {}
        self._stats_manager = stats_manager
        self._merge_domain_configs = merge_domain_configs

    def _load_config(self, config: RateLimitConfigToLoad) -> None:
        root = config.config_yaml
        if not root.domain:
            raise _config_error(config.name, "config file cannot have empty domain")

        existing = self._domains.get(root.domain)
        if existing is not None:
            if not self._merge_domain_configs:
                raise _config_error(
                    config.name, f"duplicate domain '{root.domain}' in config file"
                )
            logger.debug("patching domain: %s", root.domain)
            existing.load_descriptors(
                config.name, root.domain + ".", root.descriptors, self._stats_manager
            )
            return

        logger.debug("loading domain: %s", root.domain)
        domain = _DescriptorNode()
        domain.load_descriptors(
            config.name, root.domain + ".", root.descriptors, self._stats_manager
        )
        self._domains[root.domain] = domain

    def dump(self) -> str:
        """Return every configured limit, one per line."""
        return "".join(domain.dump() for domain in self._domains.values())

    def get_limit(self, domain: str, descriptor: RateLimitDescriptor) -> Optional[RateLimit]:
        """Return the limit that applies to a descriptor, or None."""
        root = self._domains.get(domain)
        if root is None:
            logger.debug("unknown domain '%s'", domain)
            return None

        if descriptor.limit is not None:
            return new_rate_limit(
                descriptor.limit.requests_per_unit,
                descriptor.limit.unit,
                self._stats_manager.new_stats(_descriptor_key(domain, descriptor)),
                False,
                False,
                "",
                [],
                False,
            )

        rate_limit = None
        descriptors = root.descriptors
        previous = root
        last = len(descriptor.entries) - 1
        for position, entry in enumerate(descriptor.entries):
            final_key = f"{entry.key}_{entry.value}"
            node = descriptors.get(final_key)

            if node is None:
                for wildcard in previous.wildcard_keys:
                    if final_key.startswith(wildcard.removesuffix("*")):
                        node = descriptors.get(wildcard)
                        break

            if node is None:
                final_key = entry.key
                node = descriptors.get(final_key)

            if node is not None and node.limit is not None and position == last:
                logger.debug("found rate limit: %s", final_key)
                rate_limit = node.limit

            if node is not None and node.descriptors:
                descriptors = node.descriptors
            else:
                if rate_limit is not None and rate_limit.include_value_in_metric_when_not_specified:
                    rate_limit = new_rate_limit(
                        rate_limit.limit.requests_per_unit,
                        rate_limit.limit.unit,
                        self._stats_manager.new_stats(f"{rate_limit.full_key}_{entry.value}"),
                        rate_limit.unlimited,
                        rate_limit.shadow_mode,
                        rate_limit.name,
                        rate_limit.replaces,
                        False,
                    )
                break
            previous = node

        return rate_limit

    def is_empty_domains(self) -> bool:
        return not self._domains


def new_rate_limit_config_impl(
    configs: Iterable[RateLimitConfigToLoad],
    stats_manager: StatsManager,
    merge_domain_configs: bool,
) -> RateLimitConfigImpl:
    """Build a configuration from documents; raises RateLimitConfigError if invalid."""
    result = RateLimitConfigImpl(stats_manager, merge_domain_configs)
    for config in configs:
        result._load_config(config)
    return result


class RateLimitConfigLoader:
    """Default loader of rate limit configurations."""

    def load(
        self,
        configs: Iterable[RateLimitConfigToLoad],
        stats_manager: StatsManager,
        merge_domain_configs: bool,
    ) -> RateLimitConfigImpl:
        return new_rate_limit_config_impl(configs, stats_manager, merge_domain_configs)