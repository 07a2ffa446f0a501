import pytest

from enclave_client.client import EnclaveClient
from enclave_client.crypto.certs import build_chain
from enclave_client.server import MockEnclave


@pytest.fixture(scope="session")
def dev_chain():
    return build_chain()


@pytest.fixture
def enclave(dev_chain):
    return MockEnclave(chain=dev_chain)


@pytest.fixture
def client(enclave):
    return EnclaveClient(
        "https://enclave.example.com",
        transport=enclave,
        mock_attestation=False,
        root_cert_der=enclave.root_der,
    )


@pytest.fixture
def fixed_nonce():
    return "3f0e2c9a-6d0b-4b8e-9a31-0c2f7d5b1e44"
