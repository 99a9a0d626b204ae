"""Redis Lua script for the durable sliding-window limiter.

Counting, admission and recording happen in one script so concurrent
instances cannot both admit the last slot of a window.
"""

# KEYS[1]  sorted set of admitted request timestamps for one caller/scope
# ARGV[1]  now in epoch milliseconds
# ARGV[2]  window length in milliseconds
# ARGV[3]  limit
# ARGV[4]  unique member for this attempt
#
# Returns {allowed (0|1), count after this call, oldest admitted timestamp}
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local limit = tonumber(ARGV[3])
    local member = ARGV[4]

    -- Drop attempts that fell out of the window
    redis.call('ZREMRANGEBYSCORE', key, 0, now - window)

    local count = redis.call('ZCARD', key)
    local allowed = 0
    if count < limit then
        redis.call('ZADD', key, now, member)
        count = count + 1
        allowed = 1
    end

    redis.call('PEXPIRE', key, window)

    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    local oldest_ts = now
    if oldest[2] then
        oldest_ts = tonumber(oldest[2])
    end

    return {allowed, count, oldest_ts}
"""
