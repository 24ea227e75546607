# /fio_oracle/abis/fio_erc721.py
FIO_ERC721_ABI = [
    {"inputs": [{"internalType": "address", "name": "account", "type": "address"}, {"internalType": "string", "name": "domain", "type": "string"}, {"internalType": "string", "name": "obtid", "type": "string"}], "name": "wrapnft", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [{"internalType": "uint256", "name": "tokenId", "type": "uint256"}, {"internalType": "string", "name": "obtid", "type": "string"}], "name": "burnnft", "outputs": [], "stateMutability": "nonpayable", "type": "function"},
    {"inputs": [], "name": "getOracles", "outputs": [{"internalType": "address[]", "name": "", "type": "address[]"}], "stateMutability": "view", "type": "function"},
    {"inputs": [{"internalType": "string", "name": "obtid", "type": "string"}], "name": "getApproval", "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}, {"internalType": "address", "name": "", "type": "address"}, {"internalType": "string", "name": "", "type": "string"}], "stateMutability": "view", "type": "function"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "address", "name": "account", "type": "address"}, {"indexed": False, "internalType": "string", "name": "domain", "type": "string"}, {"indexed": False, "internalType": "string", "name": "obtid", "type": "string"}], "name": "wrapped", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "string", "name": "fioaddress", "type": "string"}, {"indexed": False, "internalType": "string", "name": "domain", "type": "string"}], "name": "unwrapped", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": False, "internalType": "string", "name": "signer", "type": "string"}, {"indexed": False, "internalType": "address", "name": "account", "type": "address"}, {"indexed": False, "internalType": "string", "name": "obtid", "type": "string"}, {"indexed": False, "internalType": "bytes32", "name": "indexhash", "type": "bytes32"}], "name": "consensus_activity", "type": "event"},
    {"anonymous": False, "inputs": [{"indexed": True, "internalType": "address", "name": "from", "type": "address"}, {"indexed": True, "internalType": "address", "name": "to", "type": "address"}, {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"}], "name": "Transfer", "type": "event"},
]
