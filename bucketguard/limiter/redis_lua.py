"""Redis Lua script for the distributed token bucket.

The whole read-modify-write runs inside one script so concurrent callers,
including ones on other processes or machines, can never interleave.

Contract (version 1):
    KEYS[1]  bucket balance key
    KEYS[2]  last refill timestamp key (ms)
    KEYS[3]  lockout marker key
    ARGV[1]  capacity
    ARGV[2]  requested tokens
    ARGV[3]  tokens credited per time unit
    ARGV[4]  time unit (ms)
    ARGV[5]  lockout seconds after a denial (0 disables)
    ARGV[6]  key expiry (ms), refreshed on every write
    ARGV[7]  current time (ms)

    returns  {denied_flag, balance_string}
             denied_flag is 1 when the request is denied; the balance is "-1"
             when a lockout marker short-circuited the call. The balance is a
             string because Lua numbers in replies are truncated to integers.
"""

TOKEN_BUCKET_SCRIPT_VERSION = 1

TOKEN_BUCKET_SCRIPT = """
    local tokens_key = KEYS[1]
    local ts_key = KEYS[2]
    local lock_key = KEYS[3]
    local capacity = tonumber(ARGV[1])
    local amount = tonumber(ARGV[2])
    local inflow_per_unit = tonumber(ARGV[3])
    local inflow_unit = tonumber(ARGV[4])
    local lock_seconds = tonumber(ARGV[5])
    local key_expire_ms = tonumber(ARGV[6])
    local now = tonumber(ARGV[7])

    -- A locked-out key is denied without touching bucket state
    if redis.call('EXISTS', lock_key) == 1 then
        return {1, '-1'}
    end

    local last_time = redis.call('GET', ts_key)
    local current_value = redis.call('GET', tokens_key)
    local last_time_changed = 0

    if last_time == false or current_value == false then
        -- Unknown bucket: starts full at the current time
        current_value = capacity
        last_time = now
        last_time_changed = 1
    else
        current_value = tonumber(current_value)
        last_time = tonumber(last_time)
    end

    local past_time = now - last_time
    if past_time < 0 then
        past_time = 0
    end

    local bucket_amount
    if past_time < inflow_unit then
        bucket_amount = current_value - amount
    else
        -- Advance by whole units only so fractional-unit credit is kept
        local past_units = math.floor(past_time / inflow_unit)
        last_time = last_time + past_units * inflow_unit
        last_time_changed = 1
        bucket_amount = current_value + past_units * inflow_per_unit - amount
    end

    bucket_amount = math.min(bucket_amount, capacity)

    if bucket_amount < 0 then
        if lock_seconds > 0 then
            -- NX: concurrent deniers must not extend each other's lockout
            redis.call('SET', lock_key, '1', 'EX', lock_seconds, 'NX')
        end
        return {1, tostring(bucket_amount)}
    end

    redis.call('SET', tokens_key, bucket_amount, 'PX', key_expire_ms)
    if last_time_changed == 1 then
        redis.call('SET', ts_key, last_time, 'PX', key_expire_ms)
    else
        redis.call('PEXPIRE', ts_key, key_expire_ms)
    end

    return {0, tostring(bucket_amount)}
"""
