"""
attitude -- real-time IMU orientation estimation

Modules
-------
imu_driver     IMU samples: frame decode, serial and TCP sources, synthetic source
filters        Complementary / Madgwick / Kalman orientation filters
calibration    Stationary bias + scale estimation, JSON persistence
config         Pipeline settings and deployment profiles
events         Orientation / calibration / error events and their channel
processor      Thread-safe validate → calibrate → filter pipeline
monitor        Console orientation monitor
dashboard      Live matplotlib dashboard with keyboard control
"""
