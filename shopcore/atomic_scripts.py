"""
Lua scripts for atomic Redis operations.

Every script that touches more than one record validates all of them before
it writes anything, so a rejected call leaves no partial state behind.
Scripts reply with a flat array whose first element is a status code.

Every call also carries a one-off operation marker. An OK reply is stored
under the marker, so when the client retries a call whose reply was lost the
script returns the stored reply instead of applying its writes a second time.
"""
from typing import List, Sequence, Tuple
from uuid import uuid4

from shopcore import keys as key_layout
from shopcore.config import Config

# Last KEYS entry is the operation marker, last ARGV entry its TTL
REPLAY_GUARD_HEAD = """
local unpack = unpack or table.unpack
local marker = KEYS[#KEYS]
local marker_ttl = ARGV[#ARGV]

local stored = redis.call('LRANGE', marker, 0, -1)
if #stored > 0 then
    return stored
end

local KEYS = {unpack(KEYS, 1, #KEYS - 1)}
local ARGV = {unpack(ARGV, 1, #ARGV - 1)}
local reply = (function()
"""

REPLAY_GUARD_TAIL = """
end)()

if reply[1] == 'OK' then
    redis.call('RPUSH', marker, unpack(reply))
    redis.call('EXPIRE', marker, marker_ttl)
end
return reply
"""


def replay_safe(body: str) -> str:
    return REPLAY_GUARD_HEAD + body + REPLAY_GUARD_TAIL


# Move units from available to reserved for a whole batch, or for none of it
RESERVE_SCRIPT = replay_safe("""
-- KEYS: inventory record keys
-- ARGV: requested quantities, aligned with KEYS
for i = 1, #KEYS do
    local available = tonumber(redis.call('HGET', KEYS[i], 'available') or '0')
    if available < tonumber(ARGV[i]) then
        return {'INSUFFICIENT', i, available}
    end
end

for i = 1, #KEYS do
    local quantity = tonumber(ARGV[i])
    redis.call('HINCRBY', KEYS[i], 'available', -quantity)
    redis.call('HINCRBY', KEYS[i], 'reserved', quantity)
end

return {'OK'}
""")

# Release (reserved -> available) or commit (reserved -> gone) a batch
SETTLE_SCRIPT = replay_safe("""
-- KEYS: inventory record keys
-- ARGV[1]: 'release' or 'commit'; ARGV[2..]: quantities aligned with KEYS
local mode = ARGV[1]

for i = 1, #KEYS do
    local reserved = tonumber(redis.call('HGET', KEYS[i], 'reserved') or '0')
    if reserved < tonumber(ARGV[i + 1]) then
        return {'NOT_RESERVED', i, reserved}
    end
end

for i = 1, #KEYS do
    local quantity = tonumber(ARGV[i + 1])
    redis.call('HINCRBY', KEYS[i], 'reserved', -quantity)
    if mode == 'release' then
        redis.call('HINCRBY', KEYS[i], 'available', quantity)
    end
end

return {'OK'}
""")

CREATE_RECORD_SCRIPT = replay_safe("""
local record_key = KEYS[1]
local index_key = KEYS[2]

if redis.call('EXISTS', record_key) == 1 then
    return {'EXISTS'}
end

redis.call('HSET', record_key, 'available', ARGV[2], 'reserved', 0, 'reorder_level', ARGV[3])
redis.call('SADD', index_key, ARGV[1])
return {'OK'}
""")

# Add to (positive) or write off from (negative) available stock
ADJUST_AVAILABLE_SCRIPT = replay_safe("""
local record_key = KEYS[1]
local delta = tonumber(ARGV[1])

if redis.call('EXISTS', record_key) == 0 then
    return {'MISSING'}
end

local available = tonumber(redis.call('HGET', record_key, 'available') or '0')
if available + delta < 0 then
    return {'INSUFFICIENT', available}
end

return {'OK', redis.call('HINCRBY', record_key, 'available', delta)}
""")

SET_REORDER_LEVEL_SCRIPT = replay_safe("""
if redis.call('EXISTS', KEYS[1]) == 0 then
    return {'MISSING'}
end
redis.call('HSET', KEYS[1], 'reorder_level', ARGV[1])
return {'OK'}
""")

# Script to add or increment a cart line with validation
CART_ADD_SCRIPT = replay_safe("""
local lines_key = KEYS[1]
local added_key = KEYS[2]
local product_id = ARGV[1]
local delta = tonumber(ARGV[2])
local now = ARGV[3]
local max_items = tonumber(ARGV[4])
local max_quantity = tonumber(ARGV[5])
local ttl = tonumber(ARGV[6])

local existing_qty = tonumber(redis.call('HGET', lines_key, product_id) or '0')
local new_qty = existing_qty + delta

if new_qty < 1 then
    return {'BELOW_MINIMUM', existing_qty}
end

if new_qty > max_quantity then
    return {'MAX_QUANTITY_EXCEEDED', max_quantity}
end

-- Validate max items per cart (only if adding new line)
if existing_qty == 0 and redis.call('HLEN', lines_key) >= max_items then
    return {'MAX_ITEMS_EXCEEDED', max_items}
end

redis.call('HSET', lines_key, product_id, new_qty)
if existing_qty == 0 then
    redis.call('ZADD', added_key, now, product_id)
end

if ttl > 0 then
    redis.call('EXPIRE', lines_key, ttl)
    redis.call('EXPIRE', added_key, ttl)
end

return {'OK', new_qty, existing_qty == 0 and 1 or 0}
""")

# Script to set a line quantity explicitly; zero removes the line
CART_SET_QUANTITY_SCRIPT = replay_safe("""
local lines_key = KEYS[1]
local added_key = KEYS[2]
local product_id = ARGV[1]
local quantity = tonumber(ARGV[2])
local max_quantity = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])

if not redis.call('HGET', lines_key, product_id) then
    return {'PRODUCT_NOT_FOUND'}
end

if quantity > max_quantity then
    return {'MAX_QUANTITY_EXCEEDED', max_quantity}
end

if quantity == 0 then
    redis.call('HDEL', lines_key, product_id)
    redis.call('ZREM', added_key, product_id)
    return {'OK', 0}
end

redis.call('HSET', lines_key, product_id, quantity)
if ttl > 0 then
    redis.call('EXPIRE', lines_key, ttl)
    redis.call('EXPIRE', added_key, ttl)
end
return {'OK', quantity}
""")

# Drop guest lines first added before the cutoff
CART_PURGE_SCRIPT = replay_safe("""
local lines_key = KEYS[1]
local added_key = KEYS[2]

local expired = redis.call('ZRANGEBYSCORE', added_key, '-inf', '(' .. ARGV[1])
for _, product_id in ipairs(expired) do
    redis.call('HDEL', lines_key, product_id)
    redis.call('ZREM', added_key, product_id)
end

return {#expired, redis.call('HLEN', lines_key)}
""")

# Fold a guest cart into a user cart: sum-and-cap on conflicts
MERGE_CART_SCRIPT = replay_safe("""
local guest_lines = KEYS[1]
local guest_added = KEYS[2]
local user_lines = KEYS[3]
local user_added = KEYS[4]
local max_quantity = tonumber(ARGV[1])
local n = tonumber(ARGV[2])
local now = ARGV[3]
local max_items = tonumber(ARGV[4])

-- Phase 1: the guest cart must still match the caller's snapshot
if redis.call('HLEN', guest_lines) ~= n then
    return {'STALE'}
end

local guest_qty = {}
local new_lines = 0
for i = 1, n do
    local raw = redis.call('HGET', guest_lines, ARGV[4 + i])
    if not raw then
        return {'STALE'}
    end
    guest_qty[i] = tonumber(raw)
    if not redis.call('HGET', user_lines, ARGV[4 + i]) then
        new_lines = new_lines + 1
    end
end

-- Lines moved over count against the user's item limit
if new_lines > 0 and redis.call('HLEN', user_lines) + new_lines > max_items then
    return {'MAX_ITEMS_EXCEEDED', max_items}
end

-- Phase 2: apply
local moved, conflicts, capped, dropped = 0, 0, 0, 0

for i = 1, n do
    local product_id = ARGV[4 + i]
    local user_raw = redis.call('HGET', user_lines, product_id)

    if user_raw then
        conflicts = conflicts + 1
        local wanted = guest_qty[i] + tonumber(user_raw)
        local available = tonumber(redis.call('HGET', KEYS[4 + i], 'available') or '0')
        local merged = math.min(wanted, available, max_quantity)

        if merged < wanted then
            capped = capped + 1
        end

        if merged < 1 then
            redis.call('HDEL', user_lines, product_id)
            redis.call('ZREM', user_added, product_id)
            dropped = dropped + 1
        else
            redis.call('HSET', user_lines, product_id, merged)
        end
    else
        local added_at = redis.call('ZSCORE', guest_added, product_id) or now
        redis.call('HSET', user_lines, product_id, guest_qty[i])
        redis.call('ZADD', user_added, added_at, product_id)
        moved = moved + 1
    end
end

redis.call('DEL', guest_lines, guest_added)

return {'OK', moved, conflicts, capped, dropped}
""")

# Persist a new order, its first history entry and consume the cart snapshot
CREATE_ORDER_SCRIPT = replay_safe("""
local order_key = KEYS[1]
local number_key = KEYS[2]
local owner_index = KEYS[3]
local status_index = KEYS[4]
local history_key = KEYS[5]
local cart_lines = KEYS[6]
local cart_added = KEYS[7]
local created_index = KEYS[8]

local order_id = ARGV[1]
local created = ARGV[3]
local n = tonumber(ARGV[5])

if redis.call('EXISTS', number_key) == 1 then
    return {'DUPLICATE_NUMBER'}
end
if redis.call('EXISTS', order_key) == 1 then
    return {'DUPLICATE_ID'}
end

redis.call('SET', order_key, ARGV[2])
redis.call('SET', number_key, order_id)
redis.call('ZADD', owner_index, created, order_id)
redis.call('ZADD', status_index, created, order_id)
redis.call('ZADD', created_index, created, order_id)
redis.call('RPUSH', history_key, ARGV[4])

-- Consume exactly the snapshotted quantities; later additions survive
for i = 1, n do
    local product_id = ARGV[5 + i]
    local consumed = tonumber(ARGV[5 + n + i])
    local current = tonumber(redis.call('HGET', cart_lines, product_id) or '0')
    if current > consumed then
        redis.call('HINCRBY', cart_lines, product_id, -consumed)
    elseif current > 0 then
        redis.call('HDEL', cart_lines, product_id)
        redis.call('ZREM', cart_added, product_id)
    end
end

return {'OK'}
""")

# Compare-and-swap an order document; optionally append a history entry and
# release or commit the order's reserved stock in the same step
SWAP_ORDER_SCRIPT = replay_safe("""
-- KEYS[5..]: inventory record keys of the order lines
-- ARGV[6]: 'none', 'release' or 'commit'; ARGV[7..]: quantities aligned with KEYS[5..]
local order_key = KEYS[1]
local history_key = KEYS[2]
local from_index = KEYS[3]
local to_index = KEYS[4]
local order_id = ARGV[1]
local mode = ARGV[6]

local current = redis.call('GET', order_key)
if not current then
    return {'MISSING'}
end
if current ~= ARGV[2] then
    return {'STALE'}
end

if mode ~= 'none' then
    for i = 5, #KEYS do
        local reserved = tonumber(redis.call('HGET', KEYS[i], 'reserved') or '0')
        if reserved < tonumber(ARGV[i + 2]) then
            return {'NOT_RESERVED', i - 4, reserved}
        end
    end
end

redis.call('SET', order_key, ARGV[3])
if ARGV[4] ~= '' then
    redis.call('RPUSH', history_key, ARGV[4])
end
redis.call('ZREM', from_index, order_id)
redis.call('ZADD', to_index, ARGV[5], order_id)

if mode ~= 'none' then
    for i = 5, #KEYS do
        local quantity = tonumber(ARGV[i + 2])
        redis.call('HINCRBY', KEYS[i], 'reserved', -quantity)
        if mode == 'release' then
            redis.call('HINCRBY', KEYS[i], 'available', quantity)
        end
    end
end

return {'OK'}
""")


class AtomicScripts:
    """Entry points for the Lua scripts"""

    def __init__(self, redis_wrapper):
        """
        Initialize with RedisClient wrapper (not raw redis.Redis client)
        This ensures we use the wrapper's retry logic and error handling
        """
        self.redis_wrapper = redis_wrapper

    def _run(self, script: str, keys: Sequence[str], args: Sequence) -> list:
        # One marker per logical call; the client's retries reuse it
        marker = key_layout.operation_key(uuid4().hex)
        keys = [*keys, marker]
        args = [*args, Config.OPERATION_MARKER_TTL_SECONDS]
        return self.redis_wrapper.eval(script, len(keys), *keys, *[str(a) for a in args])

    def reserve(self, record_keys: List[str], quantities: List[int]):
        return self._run(RESERVE_SCRIPT, record_keys, quantities)

    def settle(self, mode: str, record_keys: List[str], quantities: List[int]):
        return self._run(SETTLE_SCRIPT, record_keys, [mode, *quantities])

    def create_record(self, record_key: str, index_key: str, product_id: str, quantity: int, reorder_level: int):
        return self._run(CREATE_RECORD_SCRIPT, [record_key, index_key], [product_id, quantity, reorder_level])

    def adjust_available(self, record_key: str, delta: int):
        return self._run(ADJUST_AVAILABLE_SCRIPT, [record_key], [delta])

    def set_reorder_level(self, record_key: str, reorder_level: int):
        return self._run(SET_REORDER_LEVEL_SCRIPT, [record_key], [reorder_level])

    def cart_add(
        self,
        lines_key: str,
        added_key: str,
        product_id: str,
        delta: int,
        now: float,
        max_items: int,
        max_quantity: int,
        ttl: int
    ):
        """Execute add item script"""
        return self._run(
            CART_ADD_SCRIPT,
            [lines_key, added_key],
            [product_id, delta, repr(now), max_items, max_quantity, ttl]
        )

    def cart_set_quantity(
        self,
        lines_key: str,
        added_key: str,
        product_id: str,
        quantity: int,
        max_quantity: int,
        ttl: int
    ):
        """Execute set quantity script"""
        return self._run(
            CART_SET_QUANTITY_SCRIPT,
            [lines_key, added_key],
            [product_id, quantity, max_quantity, ttl]
        )

    def cart_purge(self, lines_key: str, added_key: str, cutoff: float):
        return self._run(CART_PURGE_SCRIPT, [lines_key, added_key], [repr(cutoff)])

    def merge_cart(
        self,
        guest_keys: Tuple[str, str],
        user_keys: Tuple[str, str],
        record_keys: List[str],
        product_ids: List[str],
        max_quantity: int,
        max_items: int,
        now: float
    ):
        """Execute merge cart script"""
        return self._run(
            MERGE_CART_SCRIPT,
            [*guest_keys, *user_keys, *record_keys],
            [max_quantity, len(product_ids), repr(now), max_items, *product_ids]
        )

    def create_order(
        self,
        keys: List[str],
        order_id: str,
        order_json: str,
        created: float,
        history_json: str,
        consumed: List[Tuple[str, int]]
    ):
        return self._run(
            CREATE_ORDER_SCRIPT,
            keys,
            [
                order_id,
                order_json,
                repr(created),
                history_json,
                len(consumed),
                *[product_id for product_id, _ in consumed],
                *[quantity for _, quantity in consumed],
            ]
        )

    def swap_order(
        self,
        keys: List[str],
        order_id: str,
        expected_json: str,
        new_json: str,
        history_json: str,
        updated: float,
        stock_mode: str = "none",
        record_keys: Sequence[str] = (),
        quantities: Sequence[int] = ()
    ):
        """CAS the order; ``stock_mode`` release/commit settles ``record_keys`` in the same step"""
        return self._run(
            SWAP_ORDER_SCRIPT,
            [*keys, *record_keys],
            [order_id, expected_json, new_json, history_json, repr(updated), stock_mode, *quantities]
        )
