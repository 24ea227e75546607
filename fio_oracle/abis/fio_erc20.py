# /fio_oracle/abis/fio_erc20.py
FIO_ERC20_ABI = [
    {"inputs": [{"internalType": "address", "name": "account", "type": "address"}, {"internalType": "uint256", "name": "amount", "type": "uint256"}, {"internalType": "string", "name": "obtid", "type": "string"}], "name": "wrap", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "getOracles", "outputs": [{"internalType": "address[]", "name": "", "type": "address[]"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "string", "name": "obtid", "type": "string"}], "name": "getApproval", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}, {"internalType": "address", "name": "", "type": "address"}, {"internalType": "uint256", "name": "", "type": "uint256"}], "stateMutability": "view", "type": "function"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "address", "name": "account", "type": "address"}, {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"}, {"indexed": False, "internalType": "string", "name": "obtid", "type": "string"}], "name": "wrapped", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "string", "name": "fioaddress", "type": "string"}, {"indexed": False, "internalType": "uint256", "name": "amount", "type": "uint256"}], "name": "unwrapped", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "string", "name": "signer", "type": "string"}, {"indexed": False, "internalType": "address", "name": "account", "type": "address"}, {"indexed": False, "internalType": "string", "name": "obtid", "type": "string"}, {"indexed": False, "internalType": "bytes32", "name": "indexhash", "type": "bytes32"}], "name": "consensus_activity", "type": "event"},
]
