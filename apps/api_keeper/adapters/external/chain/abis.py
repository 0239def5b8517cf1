# apps/api_keeper/adapters/external/chain/abis.py
#
# Minimal ABIs: only the entries the keeper calls or decodes.

POOL_KEY_COMPONENTS = [
    {"name": "currency0", "type": "address"},
    {"name": "currency1", "type": "address"},
    {"name": "fee", "type": "uint24"},
    {"name": "tickSpacing", "type": "int24"},
    {"name": "hooks", "type": "address"},
]

STRATEGY_AGENT_ABI = [
    {
        "type": "event",
        "name": "AgentCreated",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "owner", "type": "address", "indexed": True},
            {"name": "ensName", "type": "string", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "AgentExecuted",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "executionId", "type": "bytes32", "indexed": False},
            {"name": "amountIn", "type": "uint256", "indexed": False},
            {"name": "amountOut", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "AgentStatusChanged",
        "anonymous": False,
        "inputs": [
            {"name": "agentId", "type": "uint256", "indexed": True},
            {"name": "oldStatus", "type": "uint8", "indexed": False},
            {"name": "newStatus", "type": "uint8", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "getAgent",
        "stateMutability": "view",
        "inputs": [{"name": "agentId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "owner", "type": "address"},
                    {"name": "ensName", "type": "string"},
                    {"name": "poolKey", "type": "tuple", "components": POOL_KEY_COMPONENTS},
                    {"name": "status", "type": "uint8"},
                    {"name": "depositedAmount", "type": "uint256"},
                    {"name": "createdAt", "type": "uint256"},
                    {"name": "lastActivity", "type": "uint256"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "getRules",
        "stateMutability": "view",
        "inputs": [{"name": "agentId", "type": "uint256"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": [
                    {"name": "ruleType", "type": "uint8"},
                    {"name": "threshold", "type": "uint256"},
                    {"name": "targetValue", "type": "uint256"},
                    {"name": "cooldown", "type": "uint256"},
                    {"name": "lastExecuted", "type": "uint256"},
                    {"name": "enabled", "type": "bool"},
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "canExecute",
        "stateMutability": "view",
        "inputs": [
            {"name": "agentId", "type": "uint256"},
            {"name": "ruleIndex", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "totalAgents",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getAgentBalance",
        "stateMutability": "view",
        "inputs": [
            {"name": "agentId", "type": "uint256"},
            {"name": "token", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "execute",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "agentId", "type": "uint256"},
            {"name": "ruleIndex", "type": "uint256"},
            {"name": "executionData", "type": "bytes"},
        ],
        "outputs": [],
    },
]

SIGNAL_COMPONENTS = [
    {"name": "signalType", "type": "uint8"},
    {"name": "magnitude", "type": "uint256"},
    {"name": "timestamp", "type": "uint256"},
    {"name": "poolId", "type": "bytes32"},
    {"name": "additionalData", "type": "bytes"},
]

HOOK_ABI = [
    {
        "type": "event",
        "name": "SignalEmitted",
        "anonymous": False,
        "inputs": [
            {"name": "poolId", "type": "bytes32", "indexed": True},
            {"name": "signalType", "type": "uint8", "indexed": True},
            {"name": "magnitude", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "getLatestSignal",
        "stateMutability": "view",
        "inputs": [{"name": "poolId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "tuple", "components": SIGNAL_COMPONENTS}],
    },
    {
        "type": "function",
        "name": "getSignalHistory",
        "stateMutability": "view",
        "inputs": [
            {"name": "poolId", "type": "bytes32"},
            {"name": "count", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "tuple[]", "components": SIGNAL_COMPONENTS}],
    },
]
