"""
Command line front end of ctvpool: creates an exit pool for a number of users of the node's wallet, funds it, and
lets the users withdraw one at a time.
"""

import argparse
import logging
import shlex
import traceback

from dotenv import load_dotenv

from prompt_toolkit import prompt
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.history import FileHistory

from ctvpool import NetworkConfig, PoolContext, PoolManager, PoolWallet, bitcoin_rpc
from ctvpool.config import POOL_USERS
from ctvpool.utils import format_tx_markdown, sats_to_btc

logging.basicConfig(filename='ctvpool.log', level=logging.DEBUG)


class ActionArgumentCompleter(Completer):
    ACTION_ARGUMENTS = {
        "create": ["users="],
        "fund": [],
        "spend": [],
        "run": [],
        "status": [],
        "printall": [],
    }

    def get_completions(self, document, complete_event):
        word_before_cursor = document.get_word_before_cursor(WORD=True)

        if ' ' not in document.text:
            # user is typing the action
            for action in self.ACTION_ARGUMENTS.keys():
                if action.startswith(word_before_cursor):
                    yield Completion(action, start_position=-len(word_before_cursor))
        else:
            # user is typing an argument, find which are valid
            action = document.text.split()[0]
            for argument in self.ACTION_ARGUMENTS.get(action, []):
                if argument not in document.text and argument.startswith(word_before_cursor):
                    yield Completion(argument, start_position=-len(word_before_cursor))


def execute_command(manager: PoolManager, input_line: str, default_users: int):
    # Split into a command and the list of arguments
    try:
        input_line_list = shlex.split(input_line)
    except ValueError as e:
        print(f"Invalid command: {str(e)}")
        return

    # Ensure input_line_list is not empty
    if input_line_list:
        action = input_line_list[0].strip()
    else:
        return

    # Get the necessary arguments from input_command_list
    args_dict = {}
    for item in input_line_list[1:]:
        param, value = item.split('=', 1)
        args_dict[param] = value

    if action not in ActionArgumentCompleter.ACTION_ARGUMENTS:
        print("Invalid action")
    elif action == "create":
        n_users = int(args_dict.get("users", default_users))
        print(f"Building pools for {n_users} users...")
        ladder = manager.create(n_users)
        print(f"{ladder.total_trees()} taproot addresses across {len(ladder.sizes)} pools")
        print(f"Entry pool address: {manager.entry_address}")
    elif action == "fund":
        print("Waiting for the funding transactions to be confirmed...")
        step = manager.fund()
        print(f"Pool funded: {step.txid}:{step.vout}")
    elif action == "spend":
        if manager.current is None:
            print("Nothing to spend: fund a pool first")
            return
        exiting = manager.current.exiting
        print(f"Waiting for the withdrawal of user {exiting} to be confirmed...")
        next_step = manager.process_spend(manager.current)
        print(f"User {exiting} left, txid: {manager.txids[-1]}")
        if next_step is None:
            print("All users have left the pool")
    elif action == "run":
        txids = manager.run()
        print(f"All users have left the pool after {len(txids)} transactions")
    elif action == "status":
        print(f"Wallet balance: {sats_to_btc(manager.wallet.get_balance())} BTC")
        if manager.ladder is None:
            print("No pool created")
        elif manager.current is None:
            print(f"Pool for {manager.ladder.n_users} users, not funded or already emptied")
        else:
            step = manager.current
            print(f"Pool at {step.txid}:{step.vout} with users {list(step.participants)}; next to leave: {step.exiting}")
    elif action == "printall":
        for i, tx in enumerate(manager.transactions):
            print(format_tx_markdown(tx, "Pool funding" if i == 0 else f"Withdrawal {i}"))


def main():
    while True:
        try:
            input_line = prompt("₿ ", history=history, completer=completer)
            execute_command(manager, input_line, args.users)
        except (KeyboardInterrupt, EOFError):
            raise  # exit
        except Exception as err:
            print(f"Error: {err}")
            print(traceback.format_exc())


if __name__ == "__main__":
    parser = argparse.ArgumentParser()

    # Number of users option
    parser.add_argument("--users", default=POOL_USERS, type=int, help=f"Number of users in the pool (default: {POOL_USERS})")

    # Network option
    parser.add_argument("--network", choices=["regtest", "signet"], default=None,
                        help="Network to use (default: the CTVPOOL_NETWORK env var, or regtest)")

    # Mine automatically option
    parser.add_argument("--mine-automatically", "-m", action="store_true", help="Mine automatically")

    # Non-interactive option
    parser.add_argument("--non-interactive", "-n", action="store_true",
                        help="Create and fund the pool, then withdraw all the users and exit")

    # Script option
    parser.add_argument("--script", "-s", type=str, default=None, help="Execute the commands in the file, one per line")

    args = parser.parse_args()

    load_dotenv()

    network = NetworkConfig.from_env(args.network)
    rpc = bitcoin_rpc(network)

    manager = PoolManager(PoolWallet(rpc, network), PoolContext(network=network),
                          mine_automatically=args.mine_automatically)

    if args.script is not None:
        with open(args.script, "r") as f:
            for line in f:
                if line.strip() and not line.startswith("#"):
                    print(f"₿ {line.strip()}")
                    execute_command(manager, line, args.users)
    elif args.non_interactive:
        for command in ["create", "fund", "run", "status"]:
            execute_command(manager, command, args.users)
    else:
        completer = ActionArgumentCompleter()
        # Create a history object
        history = FileHistory('.cli-history')

        try:
            main()
        except (KeyboardInterrupt, EOFError):
            pass  # exit
