import re

TRANSACTION_HASH_PATTERN = re.compile(r"Transaction hash: \*\*([0-9a-fx]+)\*\*")
POSITION_ID_PATTERN = re.compile(r"Position ID: \*\*(\d+)\*\*")
ERROR_WORDS = ("error", "failed", "cannot")
TOOL_MARKER = "**Tool:"


def extract_metadata(text: str) -> dict:
    """
    The agent reports on-chain activity inline using a fixed markdown syntax:

        Transaction hash: **0xabc123**
        Position ID: **42**
        **Tool: <name>**

    Each field is an independent scan over the whole text, so a response can
    carry a transaction hash and still be flagged as an error.
    """
    tx_hash_match = TRANSACTION_HASH_PATTERN.search(text)
    position_id_match = POSITION_ID_PATTERN.search(text)
    lowered = text.lower()

    return {
        "transactionHash": tx_hash_match.group(1) if tx_hash_match else None,
        "positionId": position_id_match.group(1) if position_id_match else None,
        "hasError": any(word in lowered for word in ERROR_WORDS),
        "toolsUsed": TOOL_MARKER in text,
    }
