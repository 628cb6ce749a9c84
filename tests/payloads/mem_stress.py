# mem_stress.py: allocate until the memory limit stops us
chunks = []
size = 16 * 1024 * 1024  # 16 MB/chunk
while True:
    chunks.append(bytearray(size))
