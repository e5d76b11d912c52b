import pytest

import sys
import os
from pathlib import Path

from verystable.rpc import BitcoinRPC, JSONRPCError

from ctvpool.config import NetworkConfig, PoolContext
from ctvpool.manager import PoolManager
from ctvpool.wallet import PoolWallet
from test_utils.poolgraph import create_pool_graph, spent_trees

root_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), '../')
sys.path.append(root_path)


rpc_url = "http://%s:%s@%s:%s" % (
    os.getenv("BTC_RPC_USER", "rpcuser"),
    os.getenv("BTC_RPC_PASSWORD", "rpcpass"),
    os.getenv("BTC_RPC_HOST", "localhost"),
    os.getenv("BTC_RPC_PORT", "18443")
)


def pytest_addoption(parser):
    parser.addoption("--pool_graph", action="store_true")


@pytest.fixture
def pool_graph(request: pytest.FixtureRequest):
    return request.config.getoption("--pool_graph", False)


@pytest.fixture
def ctx() -> PoolContext:
    return PoolContext(network=NetworkConfig.regtest())


@pytest.fixture
def signet_ctx() -> PoolContext:
    return PoolContext(network=NetworkConfig.signet("testwallet"))


@pytest.fixture(scope="session")
def rpc():
    rpc = BitcoinRPC(net_name="regtest", service_url=f"{rpc_url}/wallet/testwallet")
    try:
        rpc.getbestblockhash()
    except Exception as e:
        pytest.skip(f"No regtest node available: {e}")

    try:
        rpc.createwallet("testwallet")
    except JSONRPCError:
        try:
            rpc.loadwallet("testwallet")
        except JSONRPCError:
            pass  # already loaded
    return rpc


@pytest.fixture
def manager(rpc, request: pytest.FixtureRequest, pool_graph: bool):
    network = NetworkConfig.regtest("testwallet")
    manager = PoolManager(PoolWallet(rpc, network), PoolContext(network=network),
                          mine_automatically=True, poll_interval=0.01)
    yield manager

    if pool_graph and manager.ladder is not None:
        # Create the "tests/graphs" directory if it doesn't exist
        path = Path("tests/graphs")
        path.mkdir(exist_ok=True)
        spent = spent_trees(manager.initial) if manager.initial is not None else None
        create_pool_graph(manager.ladder, f"tests/graphs/{request.node.name}.html", spent)


class TestReport:
    def __init__(self):
        self.sections = {}

    def write(self, section_name, content):
        if section_name not in self.sections:
            self.sections[section_name] = []
        self.sections[section_name].append(content)

    def finalize_report(self, filename):
        with open(filename, "w") as file:
            for section, contents in self.sections.items():
                file.write(f"## {section}\n")
                for content in contents:
                    file.write(content + "\n")
                file.write("\n")


@pytest.fixture(scope="session")
def report():
    report_obj = TestReport()
    yield report_obj
    report_obj.finalize_report("report.md")
