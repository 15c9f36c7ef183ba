# src/clients/ledger_abi.py

# Minimal ABIs: only what the worker reads and writes.

INFERENCE_REGISTRY_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "requestId", "type": "uint256"},
            {"indexed": True, "internalType": "address", "name": "requester", "type": "address"},
            {"indexed": False, "internalType": "bytes32", "name": "promptHash", "type": "bytes32"},
            {"indexed": False, "internalType": "string", "name": "modelId", "type": "string"},
            {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
        "name": "InferenceRequested",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "internalType": "uint256", "name": "requestId", "type": "uint256"},
            {"indexed": False, "internalType": "bytes32", "name": "resultHash", "type": "bytes32"},
            {"indexed": False, "internalType": "string", "name": "storagePointer", "type": "string"},
            {"indexed": True, "internalType": "address", "name": "node", "type": "address"},
            {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"},
        ],
        "name": "InferenceResultSubmitted",
        "type": "event",
    },
    {
        "inputs": [
            {"internalType": "uint256", "name": "requestId", "type": "uint256"},
            {"internalType": "bytes32", "name": "resultHash", "type": "bytes32"},
            {"internalType": "string", "name": "storagePointer", "type": "string"},
        ],
        "name": "submitResult",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "requestId", "type": "uint256"}],
        "name": "getRequest",
        "outputs": [
            {
                "components": [
                    {"internalType": "address", "name": "requester", "type": "address"},
                    {"internalType": "bytes32", "name": "promptHash", "type": "bytes32"},
                    {"internalType": "string", "name": "modelId", "type": "string"},
                    {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
                    {"internalType": "bool", "name": "fulfilled", "type": "bool"},
                ],
                "internalType": "struct InferenceRegistry.InferenceRequest",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "uint256", "name": "requestId", "type": "uint256"}],
        "name": "getResult",
        "outputs": [
            {
                "components": [
                    {"internalType": "bytes32", "name": "resultHash", "type": "bytes32"},
                    {"internalType": "string", "name": "storagePointer", "type": "string"},
                    {"internalType": "address", "name": "node", "type": "address"},
                    {"internalType": "uint256", "name": "timestamp", "type": "uint256"},
                ],
                "internalType": "struct InferenceRegistry.InferenceResult",
                "name": "",
                "type": "tuple",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "totalRequests",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

# Storage flow contract: registers a file's merkle root before its segments
# are accepted by storage nodes.
FLOW_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"internalType": "uint256", "name": "length", "type": "uint256"},
                    {"internalType": "bytes", "name": "tags", "type": "bytes"},
                    {
                        "components": [
                            {"internalType": "bytes32", "name": "root", "type": "bytes32"},
                            {"internalType": "uint256", "name": "height", "type": "uint256"},
                        ],
                        "internalType": "struct SubmissionNode[]",
                        "name": "nodes",
                        "type": "tuple[]",
                    },
                ],
                "internalType": "struct Submission",
                "name": "submission",
                "type": "tuple",
            }
        ],
        "name": "submit",
        "outputs": [
            {"internalType": "uint256", "name": "", "type": "uint256"},
            {"internalType": "bytes32", "name": "", "type": "bytes32"},
            {"internalType": "uint256", "name": "", "type": "uint256"},
            {"internalType": "uint256", "name": "", "type": "uint256"},
        ],
        "stateMutability": "payable",
        "type": "function",
    },
]
