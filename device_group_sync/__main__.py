from device_group_sync.main import main

main()
