from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from web3 import Web3

from services.common.domain import FAST_FINALITY_THRESHOLD, TransferMode, VmType

TOKEN_MESSENGER_V2 = '0x28b5a0e9C621a5BadaA536219b3a228C8168cf5d'
MESSAGE_TRANSMITTER_V2 = '0x81D40F21F12A8F0E3252Bccb954D722d4c464B64'
TOKEN_MINTER_V2 = '0xfd78EE919681417d192449715b2594ab58f5D002'

DEFAULT_INDEXED_DOMAINS = (0, 1, 2, 3, 6, 7, 10, 11, 13, 14, 15, 19, 21)


@dataclass(frozen=True)
class ChainSpec:
    domain: int
    name: str
    vm_type: VmType
    chain_id: int | str
    rpc_env_key: str
    default_rpc_url: str
    fast_source: bool
    token_messenger: str = TOKEN_MESSENGER_V2
    message_transmitter: str = MESSAGE_TRANSMITTER_V2
    token_minter: str = TOKEN_MINTER_V2
    usyc_token: str | None = None
    # Legacy contracts; still emit burns, messages and mints on the chains that had them.
    token_messenger_v1: str | None = None
    message_transmitter_v1: str | None = None
    rpc_url: str = ''

    @property
    def watched_addresses(self) -> list[str]:
        addresses = [self.token_messenger, self.message_transmitter]
        for legacy in (self.token_messenger_v1, self.message_transmitter_v1):
            if legacy:
                addresses.append(legacy)
        return addresses


CHAIN_SPECS: list[dict[str, Any]] = [
    {
        'domain': 0,
        'name': 'Ethereum',
        'vm_type': VmType.EVM,
        'chain_id': 1,
        'rpc_env_key': 'ETHEREUM_RPC_URL',
        'default_rpc_url': 'https://eth.llamarpc.com',
        'fast_source': True,
        'usyc_token': '0xf29B01E5c6F9C44A0e41b42dF23A5e9Ef7c50c0f',
        'token_messenger_v1': '0xbd3fa81b58ba92a82136038b25adec7066af3155',
        'message_transmitter_v1': '0x0a992d191deec32afe36203ad87d7d289a738f81'
    },
    {
        'domain': 1,
        'name': 'Avalanche',
        'vm_type': VmType.EVM,
        'chain_id': 43114,
        'rpc_env_key': 'AVALANCHE_RPC_URL',
        'default_rpc_url': 'https://api.avax.network/ext/bc/C/rpc',
        'fast_source': False,
        'token_messenger_v1': '0x6b25532e1060ce10cc3b0a99e5683b91bfde6982',
        'message_transmitter_v1': '0x8186359af5f57fbb40c6b14a588d2a59c0c29880'
    },
    {
        'domain': 2,
        'name': 'OP Mainnet',
        'vm_type': VmType.EVM,
        'chain_id': 10,
        'rpc_env_key': 'OP_MAINNET_RPC_URL',
        'default_rpc_url': 'https://mainnet.optimism.io',
        'fast_source': True,
        'token_messenger_v1': '0x2b4069517957735be00cee0fadae88a26365528f',
        'message_transmitter_v1': '0x4d41f22c5a0e5c74090899e5a8fb597a8842b3e8'
    },
    {
        'domain': 3,
        'name': 'Arbitrum',
        'vm_type': VmType.EVM,
        'chain_id': 42161,
        'rpc_env_key': 'ARBITRUM_RPC_URL',
        'default_rpc_url': 'https://arb1.arbitrum.io/rpc',
        'fast_source': True,
        'token_messenger_v1': '0x19330d10d9cc8751218eaf51e8885d058642e08a',
        'message_transmitter_v1': '0xc30362313fbba5cf9163f0bb16a0e01f01a896ca'
    },
    {
        'domain': 5,
        'name': 'Solana',
        'vm_type': VmType.SOLANA,
        'chain_id': 'mainnet-beta',
        'rpc_env_key': 'SOLANA_RPC_URL',
        'default_rpc_url': 'https://api.mainnet-beta.solana.com',
        'fast_source': True,
        'token_messenger': 'CCTPV2vPZJS2u2BBsUoscuikbYjnpFmbFsvVuJdgUMQe',
        'message_transmitter': 'CCTPV2Sm4AdWt5296sk4P66VBZ7bEhcARwFaaS9YPbeC',
        'token_minter': 'CCTPV2vPZJS2u2BBsUoscuikbYjnpFmbFsvVuJdgUMQe'
    },
    {
        'domain': 6,
        'name': 'Base',
        'vm_type': VmType.EVM,
        'chain_id': 8453,
        'rpc_env_key': 'BASE_RPC_URL',
        'default_rpc_url': 'https://mainnet.base.org',
        'fast_source': True,
        'token_messenger_v1': '0x1682ae6375c4e4a97e4b583bc394c861a46d8962',
        'message_transmitter_v1': '0xad09780d193884d503182ad4588450c416d6f9d4'
    },
    {
        'domain': 7,
        'name': 'Polygon PoS',
        'vm_type': VmType.EVM,
        'chain_id': 137,
        'rpc_env_key': 'POLYGON_RPC_URL',
        'default_rpc_url': 'https://polygon-rpc.com',
        'fast_source': False,
        'token_messenger_v1': '0x9daf8c91aefae50b9c0e69629d3f6ca40ca3b3fe',
        'message_transmitter_v1': '0xf3be9355363857f3e001be68856a2f96b4c39ba9'
    },
    {
        'domain': 10,
        'name': 'Unichain',
        'vm_type': VmType.EVM,
        'chain_id': 130,
        'rpc_env_key': 'UNICHAIN_RPC_URL',
        'default_rpc_url': '',
        'fast_source': True
    },
    {
        'domain': 11,
        'name': 'Linea',
        'vm_type': VmType.EVM,
        'chain_id': 59144,
        'rpc_env_key': 'LINEA_RPC_URL',
        'default_rpc_url': 'https://rpc.linea.build',
        'fast_source': True
    },
    {
        'domain': 13,
        'name': 'Sonic',
        'vm_type': VmType.EVM,
        'chain_id': 146,
        'rpc_env_key': 'SONIC_RPC_URL',
        'default_rpc_url': '',
        'fast_source': False
    },
    {
        'domain': 14,
        'name': 'World Chain',
        'vm_type': VmType.EVM,
        'chain_id': 480,
        'rpc_env_key': 'WORLD_CHAIN_RPC_URL',
        'default_rpc_url': '',
        'fast_source': True
    },
    {
        'domain': 15,
        'name': 'Monad',
        'vm_type': VmType.EVM,
        'chain_id': 143,
        'rpc_env_key': 'MONAD_RPC_URL',
        'default_rpc_url': '',
        'fast_source': False
    },
    {
        'domain': 16,
        'name': 'Sei',
        'vm_type': VmType.EVM,
        'chain_id': 1329,
        'rpc_env_key': 'SEI_RPC_URL',
        'default_rpc_url': '',
        'fast_source': False
    },
    {
        'domain': 17,
        'name': 'BNB Smart Chain',
        'vm_type': VmType.EVM,
        'chain_id': 56,
        'rpc_env_key': 'BNB_RPC_URL',
        'default_rpc_url': 'https://bsc-dataseed.binance.org',
        'fast_source': False
    },
    {
        'domain': 18,
        'name': 'XDC',
        'vm_type': VmType.EVM,
        'chain_id': 50,
        'rpc_env_key': 'XDC_RPC_URL',
        'default_rpc_url': 'https://rpc.xdc.org',
        'fast_source': False
    },
    {
        'domain': 19,
        'name': 'HyperEVM',
        'vm_type': VmType.EVM,
        'chain_id': 999,
        'rpc_env_key': 'HYPEREVM_RPC_URL',
        'default_rpc_url': '',
        'fast_source': False
    },
    {
        'domain': 21,
        'name': 'Ink',
        'vm_type': VmType.EVM,
        'chain_id': 57073,
        'rpc_env_key': 'INK_RPC_URL',
        'default_rpc_url': '',
        'fast_source': True
    },
    {
        'domain': 22,
        'name': 'Plume',
        'vm_type': VmType.EVM,
        'chain_id': 98866,
        'rpc_env_key': 'PLUME_RPC_URL',
        'default_rpc_url': '',
        'fast_source': True
    },
    {
        'domain': 25,
        'name': 'Starknet',
        'vm_type': VmType.STARKNET,
        'chain_id': 'SN_MAIN',
        'rpc_env_key': 'STARKNET_RPC_URL',
        'default_rpc_url': 'https://starknet-mainnet.public.blastapi.io',
        'fast_source': True,
        'token_messenger': '',
        'message_transmitter': '',
        'token_minter': ''
    }
]

_SPECS_BY_DOMAIN: dict[int, dict[str, Any]] = {int(spec['domain']): spec for spec in CHAIN_SPECS}


def _normalize_evm_address(value: str | None) -> str | None:
    candidate = str(value or '').strip()
    if not candidate or not Web3.is_address(candidate):
        return None
    return Web3.to_checksum_address(candidate)


def _build_chain(spec: dict[str, Any]) -> ChainSpec:
    rpc_env_key = str(spec.get('rpc_env_key', '')).strip()
    rpc_url = os.getenv(rpc_env_key, '').strip() if rpc_env_key else ''
    chain = ChainSpec(**spec)

    if chain.vm_type is not VmType.EVM:
        return ChainSpec(**{**spec, 'rpc_url': rpc_url or chain.default_rpc_url})

    return ChainSpec(
        **{
            **spec,
            'token_messenger': _normalize_evm_address(chain.token_messenger) or TOKEN_MESSENGER_V2,
            'message_transmitter': _normalize_evm_address(chain.message_transmitter) or MESSAGE_TRANSMITTER_V2,
            'token_minter': _normalize_evm_address(chain.token_minter) or TOKEN_MINTER_V2,
            'usyc_token': _normalize_evm_address(chain.usyc_token),
            'token_messenger_v1': _normalize_evm_address(chain.token_messenger_v1),
            'message_transmitter_v1': _normalize_evm_address(chain.message_transmitter_v1),
            'rpc_url': rpc_url or chain.default_rpc_url
        }
    )


def chain_by_domain(domain: int) -> ChainSpec | None:
    spec = _SPECS_BY_DOMAIN.get(int(domain))
    if spec is None:
        return None
    return _build_chain(spec)


def load_chains(domains: list[int] | tuple[int, ...] | None = None) -> list[ChainSpec]:
    selected = DEFAULT_INDEXED_DOMAINS if domains is None else domains
    chains: list[ChainSpec] = []
    for domain in selected:
        chain = chain_by_domain(domain)
        if chain is not None:
            chains.append(chain)
    return chains


def chain_name(domain: int | None) -> str:
    if domain is None:
        return 'unknown'
    spec = _SPECS_BY_DOMAIN.get(int(domain))
    if spec is None:
        return f'Domain {domain}'
    return str(spec['name'])


def is_fast_transfer_supported(domain: int) -> bool:
    spec = _SPECS_BY_DOMAIN.get(int(domain))
    return bool(spec and spec.get('fast_source'))


def determine_mode(source_domain: int, min_finality_threshold: int) -> TransferMode:
    if is_fast_transfer_supported(source_domain) and min_finality_threshold <= FAST_FINALITY_THRESHOLD:
        return TransferMode.FAST
    return TransferMode.STANDARD
