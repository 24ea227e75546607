"""Contract ABIs of the wrapped FIO token (fio.erc20) and domain NFT (fio.erc721)."""

from fio_oracle.abis.fio_erc20 import FIO_ERC20_ABI
from fio_oracle.abis.fio_erc721 import FIO_ERC721_ABI

ABIS_BY_ASSET_TYPE = {
    "tokens": FIO_ERC20_ABI,
    "nfts": FIO_ERC721_ABI,
}
